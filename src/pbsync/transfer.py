"""Backup artifact transfer between a PocketBase instance and local disk.

Downloads stream the archive in chunks straight into the destination
file. A failed download never leaves a file behind that could be taken
for a complete artifact. Uploads read the whole archive into memory and
submit it as one multipart body.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import requests

from pbsync.errors import SyncError, TransferError
from pbsync.pocketbase.client import DownloadDescriptor, PocketBaseSession
from pbsync.utils.logging import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[int, Optional[int]], None]


class TransferStatus(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class TransferStats:
    """State of a single download or upload."""

    name: str
    status: TransferStatus = TransferStatus.IDLE
    total_bytes: Optional[int] = None
    transferred: int = 0

    @property
    def complete(self) -> bool:
        return self.status is TransferStatus.COMPLETE


def _content_length(headers) -> Optional[int]:
    value = headers.get("Content-Length") if headers is not None else None
    if value is None:
        return None
    try:
        length = int(value)
    except (TypeError, ValueError):
        return None
    return length if length >= 0 else None


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error(f"Could not remove partial file {path}: {e}")


class TransferEngine:
    """Streams backup archives to and from local storage."""

    def __init__(
        self,
        http: Optional[requests.Session] = None,
        chunk_size: int = 64 * 1024,
        timeout: Optional[float] = None,
        content_type: str = "application/zip",
    ):
        self.http = http or requests.Session()
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.content_type = content_type

    def _notify(self, progress: Optional[ProgressCallback], stats: TransferStats) -> None:
        if progress is None:
            return
        try:
            progress(stats.transferred, stats.total_bytes)
        except Exception as e:
            logger.debug(f"Progress observer failed: {e}")

    def download(
        self,
        descriptor: DownloadDescriptor,
        destination: str | Path,
        progress: Optional[ProgressCallback] = None,
    ) -> TransferStats:
        """Stream a remote backup into ``destination``.

        The destination is opened (and truncated) before the request is
        issued. On any failure the partial file is removed and
        ``TransferError`` is raised.
        """
        destination = Path(destination)
        stats = TransferStats(name=descriptor.name)

        try:
            fh = open(destination, "wb")
        except OSError as e:
            stats.status = TransferStatus.FAILED
            raise TransferError(f"Failed to save backup file {destination}: {e}") from e

        stats.status = TransferStatus.STREAMING
        try:
            with fh:
                try:
                    resp = self.http.get(descriptor.url, stream=True, timeout=self.timeout)
                except requests.RequestException as e:
                    raise TransferError(f"Failed to download backup: {e}") from e
                try:
                    if not resp.ok:
                        raise TransferError(
                            f"Failed to download backup: server returned {resp.status_code}"
                        )
                    stats.total_bytes = _content_length(resp.headers)
                    self._notify(progress, stats)

                    for chunk in resp.iter_content(chunk_size=self.chunk_size):
                        if not chunk:
                            continue
                        fh.write(chunk)
                        stats.transferred += len(chunk)
                        self._notify(progress, stats)

                    fh.flush()
                    os.fsync(fh.fileno())
                except requests.RequestException as e:
                    raise TransferError(f"Failed to download backup: {e}") from e
                except OSError as e:
                    raise TransferError(f"Failed to save backup file {destination}: {e}") from e
                finally:
                    resp.close()

            if stats.total_bytes is not None and stats.transferred != stats.total_bytes:
                raise TransferError(
                    f"Failed to download backup: got {stats.transferred} of {stats.total_bytes} bytes"
                )
        except BaseException:
            stats.status = TransferStatus.FAILED
            _discard(destination)
            raise

        stats.status = TransferStatus.COMPLETE
        logger.info(f"Downloaded {descriptor.name}: {stats.transferred / (1024**2):.2f} MiB")
        return stats

    def upload(
        self,
        source: str | Path,
        session: PocketBaseSession,
        target_name: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> TransferStats:
        """Upload a local archive to ``session`` under ``target_name``."""
        source = Path(source)
        name = target_name or source.name
        stats = TransferStats(name=name)

        try:
            data = source.read_bytes()
        except OSError as e:
            stats.status = TransferStatus.FAILED
            raise TransferError(f"Failed to read backup file {source}: {e}") from e

        stats.total_bytes = len(data)
        stats.status = TransferStatus.STREAMING
        self._notify(progress, stats)

        try:
            session.upload_backup(name, data, self.content_type)
        except SyncError as e:
            stats.status = TransferStatus.FAILED
            raise TransferError(f"Failed to upload backup: {e}") from e

        stats.transferred = len(data)
        stats.status = TransferStatus.COMPLETE
        self._notify(progress, stats)
        logger.info(f"Uploaded {name} to {session.role}: {stats.transferred / (1024**2):.2f} MiB")
        return stats
