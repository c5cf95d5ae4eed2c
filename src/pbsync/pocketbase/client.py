"""PocketBase control-plane API session.

One ``PocketBaseSession`` wraps one authenticated connection to an
instance. Everything except the liveness probe requires a valid
superuser token and fails fast without one.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote, urlencode

import requests
from jose import JWTError, jwt

from pbsync.errors import AuthError, CapabilityError, RemoteOpError, Unreachable
from pbsync.utils.logging import get_logger

logger = get_logger(__name__)

AUTH_COLLECTION = "_superusers"

_DEFAULT_TIMEOUT = object()


@dataclass(frozen=True)
class DownloadDescriptor:
    """Short-lived download location of a backup artifact."""

    name: str
    token: str
    url: str


def token_is_valid(token: str, now: Optional[float] = None) -> bool:
    """Check a PocketBase token the way the official SDK does.

    The token must decode as a JWT; an ``exp`` claim, when present,
    must lie in the future. The signature is not verified.
    """
    if not token:
        return False
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return False
    if not claims:
        return False
    exp = claims.get("exp")
    if exp is None:
        return True
    now = time.time() if now is None else now
    try:
        return float(exp) > now
    except (TypeError, ValueError):
        return False


class PocketBaseSession:
    """Authenticated connection to one PocketBase instance."""

    def __init__(
        self,
        base_url: str,
        role: str = "source",
        http: Optional[requests.Session] = None,
        timeout: float = 30.0,
        backup_timeout: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.role = role
        self.http = http or requests.Session()
        self.timeout = timeout
        self.backup_timeout = backup_timeout
        self.token = ""

    @classmethod
    def authenticate(
        cls,
        url: str,
        identity: str,
        secret: str,
        role: str = "source",
        **kwargs: Any,
    ) -> "PocketBaseSession":
        """Create a session and log in with superuser credentials."""
        session = cls(url, role=role, **kwargs)
        session.login(identity, secret)
        return session

    @property
    def is_valid(self) -> bool:
        return token_is_valid(self.token)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _require_auth(self) -> None:
        if not self.is_valid:
            raise AuthError(
                f"{self.role} session for {self.base_url} is not authenticated or its token expired"
            )

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return (resp.text or "")[:500] or resp.reason or "no response body"

    def _request(self, method: str, path: str, timeout: Any = _DEFAULT_TIMEOUT, **kwargs) -> requests.Response:
        """Issue an authenticated call, raising ``RemoteOpError`` on any failure."""
        self._require_auth()
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = self.token
        url = self._url(path)
        try:
            resp = self.http.request(
                method,
                url,
                headers=headers,
                timeout=self.timeout if timeout is _DEFAULT_TIMEOUT else timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            raise RemoteOpError(f"{method} {path} on {self.role} failed: {e}") from e
        if not resp.ok:
            message = self._error_message(resp)
            logger.debug(f"API error {resp.status_code} on {method} {path}: {message}")
            raise RemoteOpError(
                f"{method} {path} on {self.role} returned {resp.status_code}: {message}",
                status_code=resp.status_code,
            )
        return resp

    # ── Auth ─────────────────────────────────────────────────────

    def login(self, identity: str, secret: str) -> None:
        """Password-grant login against the superusers collection.

        Both the HTTP status and the validity of the returned token are
        checked; a 200 carrying an unusable token is a failure.
        """
        path = f"/api/collections/{AUTH_COLLECTION}/auth-with-password"
        try:
            resp = self.http.request(
                "POST",
                self._url(path),
                json={"identity": identity, "password": secret},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthError(f"Cannot reach {self.role} instance at {self.base_url}: {e}") from e

        if resp.status_code != 200:
            raise AuthError(
                f"Failed to authenticate with {self.role} ({resp.status_code}): {self._error_message(resp)}"
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise AuthError(f"Failed to authenticate with {self.role}: malformed response") from e

        self.token = str(body.get("token") or "") if isinstance(body, dict) else ""
        if not self.is_valid:
            self.token = ""
            raise AuthError(f"Failed to authenticate with {self.role}: no valid token returned")
        logger.debug(f"Authenticated with {self.role} ({self.base_url})")

    # ── Health ───────────────────────────────────────────────────

    def _get_health(self) -> requests.Response:
        headers = {"Authorization": self.token} if self.token else {}
        return self.http.request("GET", self._url("/api/health"), headers=headers, timeout=self.timeout)

    def check_capability(self) -> None:
        """Fail unless the instance is healthy and allowed to create backups."""
        self._require_auth()
        try:
            resp = self._get_health()
        except requests.RequestException as e:
            raise CapabilityError(f"{self.role} instance is not reachable: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        code = body.get("code", resp.status_code)
        if resp.status_code != 200 or code != 200:
            raise CapabilityError(f"{self.role} instance is not available (status {code})")

        data = body.get("data") or {}
        if not data.get("canBackup"):
            raise CapabilityError(f"{self.role} instance is not configured to backup")

    def health_check(self) -> None:
        """Single liveness probe. No retry, no auth required."""
        try:
            resp = self._get_health()
        except requests.RequestException as e:
            raise Unreachable(f"{self.role} instance is not answering: {e}") from e
        if not resp.ok:
            raise Unreachable(f"{self.role} instance health returned {resp.status_code}")

    # ── Backups ──────────────────────────────────────────────────

    def create_backup(self, name: str) -> None:
        """Ask the instance to write a named backup. May take a long time."""
        logger.debug(f"Creating backup '{name}' on {self.role}")
        self._request("POST", "/api/backups", json={"name": name}, timeout=self.backup_timeout)

    def get_file_token(self) -> str:
        resp = self._request("POST", "/api/files/token")
        try:
            token = resp.json().get("token")
        except (ValueError, AttributeError) as e:
            raise RemoteOpError(f"Malformed file token response from {self.role}") from e
        if not token:
            raise RemoteOpError(f"{self.role} returned an empty file token")
        return token

    def backup_download_url(self, token: str, name: str) -> str:
        return self._url(f"/api/backups/{quote(name, safe='')}?{urlencode({'token': token})}")

    def get_download_descriptor(self, name: str) -> DownloadDescriptor:
        """Fetch a fresh file token and compose the artifact download URL."""
        token = self.get_file_token()
        return DownloadDescriptor(name=name, token=token, url=self.backup_download_url(token, name))

    def delete_backup(self, name: str) -> None:
        self._request("DELETE", f"/api/backups/{quote(name, safe='')}")

    def upload_backup(self, name: str, data: bytes, content_type: str = "application/zip") -> None:
        """Multipart-upload an archive as a new backup entry."""
        self._request(
            "POST",
            "/api/backups/upload",
            files={"file": (name, data, content_type)},
            timeout=self.backup_timeout,
        )

    def restore_backup(self, name: str) -> None:
        """Trigger a restore. The instance restarts its process afterwards."""
        self._request("POST", f"/api/backups/{quote(name, safe='')}/restore", timeout=self.backup_timeout)
