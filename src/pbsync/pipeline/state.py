"""Run state and results of a sync pipeline execution."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pbsync.utils.logging import get_logger

logger = get_logger(__name__)

BACKUP_PREFIX = "sync-backup-"


def generate_backup_name(now: Optional[datetime] = None) -> str:
    """Name of the artifact for one run: ``sync-backup-<YYYY-MM-DD>-<seconds>.zip``.

    The date is the UTC calendar date, the suffix the seconds-of-minute.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"{BACKUP_PREFIX}{now.date().isoformat()}-{now.second}.zip"


@dataclass
class CleanupOutcome:
    """Result of a best-effort stage. ``ok=False`` is a warning, never a failure."""

    stage: str
    ok: bool
    message: str = ""


@dataclass
class SyncState:
    """In-memory state of one run.

    ``artifacts`` carries intermediate results between stages (sizes,
    probe counts). Credentials and tokens are never stored here.
    """
    run_id: str
    backup_name: str
    local_path: Path
    completed_stages: list[str] = field(default_factory=list)
    cleanups: list[CleanupOutcome] = field(default_factory=list)
    artifacts: dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None


@dataclass
class SyncResult:
    """Result of a sync execution."""
    success: bool
    run_id: str
    backup_name: str
    started_at: Optional[datetime] = None
    duration: str = ""
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    completed_stages: list[str] = field(default_factory=list)
    cleanups: list[CleanupOutcome] = field(default_factory=list)
    artifacts: dict[str, Any] = field(default_factory=dict)

    @property
    def warnings(self) -> list[CleanupOutcome]:
        return [c for c in self.cleanups if not c.ok]

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> dict:
        d = asdict(self)
        if self.started_at is not None:
            d["started_at"] = self.started_at.isoformat()
        d["warnings"] = [asdict(w) for w in self.warnings]
        return d

    def save(self, path: str | Path) -> None:
        """Write the result as a JSON report."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        logger.info(f"Report written to {path}")
