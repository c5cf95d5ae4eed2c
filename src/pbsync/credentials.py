"""Credential resolution for the source and target instances.

Lookup order per role: the env file, then the process environment, then
an interactive terminal prompt. A role only counts as configured when
all three of ``<ROLE>_URL``, ``<ROLE>_EMAIL`` and ``<ROLE>_PASSWORD``
are present.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Mapping, Optional

import click
from dotenv import dotenv_values
from pydantic import ValidationError

from pbsync.config import CredentialSettings, InstanceCredentials
from pbsync.errors import CredentialError
from pbsync.utils.logging import get_logger

logger = get_logger(__name__)

KEYS = ("URL", "EMAIL", "PASSWORD")


class CredentialResolver:
    """Supplies ``InstanceCredentials`` for the "source" and "target" roles."""

    def __init__(
        self,
        settings: CredentialSettings | None = None,
        prompt: Callable[..., str] = click.prompt,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.settings = settings or CredentialSettings()
        self._prompt = prompt
        self._environ = environ if environ is not None else os.environ

    def resolve(self, role: str) -> InstanceCredentials:
        """Return credentials for ``role`` or raise ``CredentialError``."""
        values = self._from_env_file(role)
        if values is None and self.settings.use_environment:
            values = self._lookup(self._environ, role)
            if values is not None:
                logger.debug(f"Using {role} credentials from the process environment")

        if values is None:
            if not self.settings.interactive:
                raise CredentialError(
                    f"No {role} credentials found (set {role.upper()}_URL, "
                    f"{role.upper()}_EMAIL and {role.upper()}_PASSWORD)"
                )
            logger.info(f"No {role} credentials found, please enter them manually")
            values = self._ask(role)

        try:
            return InstanceCredentials(url=values[0], email=values[1], password=values[2])
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise CredentialError(f"Invalid {role} credentials: {problems}") from e

    def _from_env_file(self, role: str) -> Optional[tuple[str, str, str]]:
        path = Path(self.settings.env_file)
        if not path.is_file():
            return None
        values = self._lookup(dotenv_values(path), role)
        if values is not None:
            logger.debug(f"Using {role} credentials from {path}")
        return values

    @staticmethod
    def _lookup(source: Mapping[str, Optional[str]], role: str) -> Optional[tuple[str, str, str]]:
        prefix = role.upper()
        found = [(source.get(f"{prefix}_{key}") or "").strip() for key in KEYS]
        if all(found):
            return found[0], found[1], found[2]
        return None

    def _ask(self, role: str) -> tuple[str, str, str]:
        try:
            url = self._prompt(f"Enter {role} URL")
            email = self._prompt(f"Enter {role} email")
            password = self._prompt(f"Enter {role} password", hide_input=True)
        except (click.Abort, KeyboardInterrupt, EOFError) as e:
            raise CredentialError("Operation cancelled") from e
        return url, email, password
