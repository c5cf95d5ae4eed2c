"""Error taxonomy for the sync pipeline.

Fatal categories unwind to the orchestrator, which turns them into a
failed ``SyncResult``. ``Unreachable`` only ever lives inside the
readiness poll.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every pbsync error."""


class CredentialError(SyncError):
    """Credentials are missing, incomplete or their input was cancelled."""


class AuthError(SyncError):
    """Login rejected, or the stored token is not valid after login."""


class CapabilityError(SyncError):
    """Instance unreachable or not configured to create backups."""


class RemoteOpError(SyncError):
    """A control-plane call failed after authentication."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransferError(SyncError):
    """Streaming a backup artifact to or from local storage failed."""


class Unreachable(SyncError):
    """A single health probe failed."""


class ReadinessTimeout(SyncError):
    """The instance did not become healthy within the configured timeout."""
