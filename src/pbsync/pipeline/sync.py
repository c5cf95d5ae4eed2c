"""Sync pipeline orchestrator — coordinates all migration stages."""

from __future__ import annotations

import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, ContextManager, Optional

from pbsync.config import AppConfig, InstanceCredentials
from pbsync.credentials import CredentialResolver
from pbsync.errors import SyncError
from pbsync.pipeline.readiness import ReadinessPoller
from pbsync.pipeline.state import CleanupOutcome, SyncResult, SyncState, generate_backup_name
from pbsync.pocketbase.client import PocketBaseSession
from pbsync.transfer import ProgressCallback, TransferEngine
from pbsync.utils.logging import get_logger
from pbsync.utils.progress import LoggingProgress

logger = get_logger(__name__)

SessionFactory = Callable[[InstanceCredentials, str], PocketBaseSession]
ProgressFactory = Callable[[str], ContextManager[Optional[ProgressCallback]]]


class SyncPipeline:
    """Orchestrates a full PocketBase → PocketBase migration.

    Stages (executed in order):
    1. resolve_source        — Read source credentials
    2. auth_source           — Log in to source as superuser
    3. resolve_target        — Read target credentials
    4. auth_target           — Log in to target as superuser
    5. check_source          — Source is healthy and may create backups
    6. create_backup         — Create the named backup on source
    7. download              — Stream the backup to the local work dir
    8. delete_source_backup  — Remove the backup from source (best-effort)
    9. upload                — Upload the local archive to target
    10. cleanup_local        — Remove the local archive (best-effort)
    11. restore              — Restore target from the uploaded backup
    12. await_ready          — Wait for target to restart and answer again
    13. delete_target_backup — Remove the backup from target (best-effort)

    Any failure in a non best-effort stage aborts the run. Best-effort
    stages report a ``CleanupOutcome`` and never change the outcome.
    """

    STAGES = [
        "resolve_source",
        "auth_source",
        "resolve_target",
        "auth_target",
        "check_source",
        "create_backup",
        "download",
        "delete_source_backup",  # only reached once the download succeeded
        "upload",
        "cleanup_local",
        "restore",
        "await_ready",           # target restarts during restore
        "delete_target_backup",
    ]

    BEST_EFFORT = frozenset({"delete_source_backup", "cleanup_local", "delete_target_backup"})

    def __init__(
        self,
        config: AppConfig,
        resolver: Optional[CredentialResolver] = None,
        session_factory: Optional[SessionFactory] = None,
        transfer: Optional[TransferEngine] = None,
        poller: Optional[ReadinessPoller] = None,
        progress_factory: Optional[ProgressFactory] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.resolver = resolver or CredentialResolver(config.credentials)
        self.session_factory = session_factory or self._default_session_factory
        self.transfer = transfer or TransferEngine(
            chunk_size=config.transfer.chunk_size,
            timeout=config.transfer.read_timeout,
            content_type=config.transfer.content_type,
        )
        self.poller = poller or ReadinessPoller(
            interval=config.readiness.interval,
            timeout=config.readiness.timeout,
            backoff=config.readiness.backoff,
            max_interval=config.readiness.max_interval,
        )
        self.progress_factory = progress_factory or LoggingProgress
        self._now = now
        self.sessions: dict[str, PocketBaseSession] = {}
        self._credentials: dict[str, InstanceCredentials] = {}

    def _default_session_factory(self, creds: InstanceCredentials, role: str) -> PocketBaseSession:
        return PocketBaseSession.authenticate(
            creds.url,
            creds.email,
            creds.password.get_secret_value(),
            role=role,
            timeout=self.config.api.request_timeout,
            backup_timeout=self.config.api.backup_timeout,
        )

    def run(self) -> SyncResult:
        """Execute the full pipeline once.

        Returns:
            SyncResult with success status, the failing stage if any,
            and the outcome of every best-effort stage that ran
        """
        run_id = str(uuid.uuid4())[:8]
        start_time = time.time()
        started_at = self._now()
        backup_name = generate_backup_name(started_at)

        state = SyncState(
            run_id=run_id,
            backup_name=backup_name,
            local_path=self.config.transfer.work_dir / backup_name,
            started_at=started_at,
        )
        self.sessions.clear()
        self._credentials.clear()

        logger.info(f"[bold]Starting sync {run_id}[/bold]: backup '{backup_name}'")

        for stage_name in self.STAGES:
            logger.info(f"[cyan]▶ Stage: {stage_name}[/cyan]")

            if stage_name in self.BEST_EFFORT:
                outcome = self._execute_stage(stage_name, state)
                state.cleanups.append(outcome)
                state.completed_stages.append(stage_name)
                if outcome.ok:
                    logger.info(f"[green]✓ Stage {stage_name} complete[/green]")
                else:
                    logger.warning(f"[yellow]⚠ {outcome.message} (continuing...)[/yellow]")
                continue

            try:
                self._execute_stage(stage_name, state)
                state.completed_stages.append(stage_name)
                logger.info(f"[green]✓ Stage {stage_name} complete[/green]")

            except Exception as e:
                elapsed = time.time() - start_time
                self._credentials.clear()

                logger.error(f"[red]✗ Stage {stage_name} failed: {e}[/red]")
                return SyncResult(
                    success=False,
                    run_id=run_id,
                    backup_name=backup_name,
                    started_at=state.started_at,
                    failed_stage=stage_name,
                    error=str(e),
                    duration=f"{elapsed:.0f}s",
                    completed_stages=list(state.completed_stages),
                    cleanups=list(state.cleanups),
                    artifacts=dict(state.artifacts),
                )

        elapsed = time.time() - start_time
        logger.info(f"[bold green]Sync {run_id} complete in {elapsed:.0f}s[/bold green]")

        return SyncResult(
            success=True,
            run_id=run_id,
            backup_name=backup_name,
            started_at=state.started_at,
            duration=f"{elapsed:.0f}s",
            completed_stages=list(state.completed_stages),
            cleanups=list(state.cleanups),
            artifacts=dict(state.artifacts),
        )

    def dry_run(self) -> list[str]:
        """Describe the stages without contacting any instance."""
        logger.info("[yellow]DRY RUN[/yellow]")
        logger.info(f"Backup would be named '{generate_backup_name(self._now())}'")
        logger.info(f"Local copy in {self.config.transfer.work_dir}")
        logger.info("Stages that would execute:")
        lines = []
        for i, stage in enumerate(self.STAGES, 1):
            suffix = " (best-effort)" if stage in self.BEST_EFFORT else ""
            lines.append(f"{i}. {stage}{suffix}")
            logger.info(f"  {i}. {stage}{suffix}")
        return lines

    def preflight(self) -> dict[str, Optional[str]]:
        """Authenticate both roles and run their read-only checks.

        Source gets the capability check, target a liveness probe. The
        two checks run concurrently. Returns role -> error message
        (``None`` when the check passed). Credential and login failures
        propagate.
        """
        for role in ("source", "target"):
            creds = self.resolver.resolve(role)
            self.sessions[role] = self.session_factory(creds, role)
            logger.info(f"Authenticated with {role} ({creds.url})")

        checks = {
            "source": self.sessions["source"].check_capability,
            "target": self.sessions["target"].health_check,
        }
        results: dict[str, Optional[str]] = {}
        with ThreadPoolExecutor(max_workers=len(checks)) as pool:
            futures = {role: pool.submit(check) for role, check in checks.items()}
            for role, future in futures.items():
                try:
                    future.result()
                    results[role] = None
                except SyncError as e:
                    results[role] = str(e)
        return results

    def _execute_stage(self, stage: str, state: SyncState):
        """Execute a single pipeline stage.

        Each stage method may update state.artifacts for later stages.
        Best-effort stages return a CleanupOutcome.
        """
        handler = getattr(self, f"_stage_{stage}", None)
        if handler is None:
            raise NotImplementedError(f"Stage '{stage}' not implemented")
        return handler(state)

    # ─── Stage implementations ───────────────────────────────────────

    def _resolve(self, role: str) -> None:
        self._credentials[role] = self.resolver.resolve(role)

    def _authenticate(self, role: str) -> None:
        creds = self._credentials.pop(role)
        logger.info(f"Authenticating with {role} ({creds.url})...")
        self.sessions[role] = self.session_factory(creds, role)

    def _stage_resolve_source(self, state: SyncState) -> None:
        self._resolve("source")

    def _stage_auth_source(self, state: SyncState) -> None:
        self._authenticate("source")

    def _stage_resolve_target(self, state: SyncState) -> None:
        self._resolve("target")

    def _stage_auth_target(self, state: SyncState) -> None:
        self._authenticate("target")

    def _stage_check_source(self, state: SyncState) -> None:
        """Early, explicit error instead of an opaque failure at backup time."""
        logger.info("Checking if source can be backed up...")
        self.sessions["source"].check_capability()

    def _stage_create_backup(self, state: SyncState) -> None:
        logger.info(f"Creating backup '{state.backup_name}' on source...")
        self.sessions["source"].create_backup(state.backup_name)

    def _stage_download(self, state: SyncState) -> None:
        state.local_path.parent.mkdir(parents=True, exist_ok=True)
        # A fresh file token for every download attempt
        descriptor = self.sessions["source"].get_download_descriptor(state.backup_name)

        logger.info(f"Downloading backup to {state.local_path}...")
        with self.progress_factory("Downloading backup") as progress:
            stats = self.transfer.download(descriptor, state.local_path, progress=progress)
        state.artifacts["downloaded_bytes"] = stats.transferred
        state.artifacts["expected_bytes"] = stats.total_bytes

    def _stage_delete_source_backup(self, state: SyncState) -> CleanupOutcome:
        return self._delete_remote_backup("source", "delete_source_backup", state)

    def _stage_upload(self, state: SyncState) -> None:
        logger.info("Uploading backup to target...")
        stats = self.transfer.upload(state.local_path, self.sessions["target"], state.backup_name)
        state.artifacts["uploaded_bytes"] = stats.transferred

    def _stage_cleanup_local(self, state: SyncState) -> CleanupOutcome:
        if self.config.transfer.keep_local:
            return CleanupOutcome("cleanup_local", True, f"Kept local copy {state.local_path}")
        logger.info(f"Removing local copy {state.local_path}...")
        try:
            state.local_path.unlink()
        except OSError as e:
            return CleanupOutcome(
                "cleanup_local", False,
                f"Failed to remove local copy {state.local_path}, delete it manually: {e}",
            )
        return CleanupOutcome("cleanup_local", True, f"Removed {state.local_path}")

    def _stage_restore(self, state: SyncState) -> None:
        logger.info(f"Restoring backup '{state.backup_name}' on target...")
        self.sessions["target"].restore_backup(state.backup_name)

    def _stage_await_ready(self, state: SyncState) -> None:
        logger.info("Waiting for target instance to start...")
        state.artifacts["health_probes"] = self.poller.await_ready(self.sessions["target"])

    def _stage_delete_target_backup(self, state: SyncState) -> CleanupOutcome:
        return self._delete_remote_backup("target", "delete_target_backup", state)

    def _delete_remote_backup(self, role: str, stage: str, state: SyncState) -> CleanupOutcome:
        logger.info(f"Deleting {role} backup...")
        try:
            self.sessions[role].delete_backup(state.backup_name)
        except SyncError as e:
            return CleanupOutcome(
                stage, False,
                f"Failed to delete {role} backup '{state.backup_name}', "
                f"you have to delete it manually: {e}",
            )
        return CleanupOutcome(stage, True, f"Deleted {role} backup '{state.backup_name}'")

