"""Progress observers for backup transfers.

Both observers are callables taking ``(bytes_transferred, total_bytes)``
where ``total_bytes`` may be ``None`` when the server sent no length.
They are used as context managers around a single transfer.
"""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from pbsync.utils.logging import get_logger

logger = get_logger(__name__)

MIB = 1024 * 1024


class LoggingProgress:
    """Logs transfer progress every 5% (or every 16 MiB when the size is unknown)."""

    def __init__(self, description: str, step_pct: float = 5, step_bytes: int = 16 * MIB):
        self.description = description
        self.step_pct = step_pct
        self.step_bytes = step_bytes
        self.last_logged_pct = -step_pct
        self.last_logged_bytes = 0

    def __enter__(self) -> "LoggingProgress":
        return self

    def __exit__(self, *args) -> None:
        pass

    def __call__(self, transferred: int, total: Optional[int]) -> None:
        if total:
            pct = transferred / total * 100
            if pct - self.last_logged_pct >= self.step_pct or transferred == total:
                logger.info(f"{self.description}: {pct:.0f}% ({transferred / MIB:.2f} MiB)")
                self.last_logged_pct = pct
        elif transferred - self.last_logged_bytes >= self.step_bytes:
            logger.info(f"{self.description}: {transferred / MIB:.2f} MiB")
            self.last_logged_bytes = transferred


class RichTransferProgress:
    """Live ``Downloading backup [bar] NN%`` indicator on the terminal."""

    def __init__(self, description: str, console: Console | None = None):
        self.description = description
        self.progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console or Console(stderr=True),
            transient=False,
        )
        self._task: TaskID | None = None

    def __enter__(self) -> "RichTransferProgress":
        self.progress.start()
        return self

    def __exit__(self, *args) -> None:
        self.progress.stop()

    def __call__(self, transferred: int, total: Optional[int]) -> None:
        if self._task is None:
            self._task = self.progress.add_task(self.description, total=total)
        self.progress.update(self._task, completed=transferred, total=total)
