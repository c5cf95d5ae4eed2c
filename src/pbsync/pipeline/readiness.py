"""Wait for an instance to come back after a restore-triggered restart."""

from __future__ import annotations

import time
from typing import Callable, Optional

from pbsync.errors import ReadinessTimeout, Unreachable
from pbsync.pocketbase.client import PocketBaseSession
from pbsync.utils.logging import get_logger

logger = get_logger(__name__)


class ReadinessPoller:
    """Probe ``health_check`` until it succeeds.

    With the defaults (``timeout=None``, ``backoff=1.0``) this is a
    fixed-interval loop that never gives up. Every failed probe counts
    as "not ready yet". ``KeyboardInterrupt`` raised while sleeping
    propagates and no further probe is made.
    """

    def __init__(
        self,
        interval: float = 1.5,
        timeout: Optional[float] = None,
        backoff: float = 1.0,
        max_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = interval
        self.timeout = timeout
        self.backoff = backoff
        self.max_interval = max_interval
        self._sleep = sleep
        self._clock = clock

    def await_ready(self, session: PocketBaseSession) -> int:
        """Block until the instance answers; return the number of probes made."""
        start = self._clock()
        delay = self.interval
        attempts = 0

        while True:
            attempts += 1
            try:
                session.health_check()
                logger.info(f"{session.role} instance is up after {attempts} probe(s)")
                return attempts
            except Unreachable as e:
                logger.debug(f"Probe {attempts}: {e}")

            elapsed = self._clock() - start
            if self.timeout is not None and elapsed + delay > self.timeout:
                raise ReadinessTimeout(
                    f"{session.role} instance not ready after {elapsed:.0f}s ({attempts} probes)"
                )

            if attempts == 1 or attempts % 10 == 0:
                logger.info(f"Waiting for {session.role} instance to start ({elapsed:.0f}s elapsed)")
            self._sleep(delay)

            if self.backoff > 1.0:
                delay = delay * self.backoff
                if self.max_interval is not None:
                    delay = min(delay, self.max_interval)
