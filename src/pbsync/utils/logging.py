"""Structured logging for pbsync."""

from __future__ import annotations

import logging

from rich.logging import RichHandler

ROOT_LOGGER = "pbsync"


def _install_handler(root: logging.Logger) -> None:
    handler = RichHandler(
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``pbsync`` tree.

    Only the tree root carries a handler; module loggers propagate to
    it and inherit its level.
    """
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        _install_handler(root)

    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def set_log_level(level: str) -> None:
    """Set log level (DEBUG, INFO, WARNING, ERROR) for all of pbsync."""
    logging.getLogger(ROOT_LOGGER).setLevel(getattr(logging, level.upper(), logging.INFO))
