"""
Artifact storage for export files.

The worker always writes to a local temp file first; a FileStore then takes
ownership of the finished file (local disk or S3) and serves time-limited
download URLs for it.
"""

import calendar
import hashlib
import hmac
import os
import shutil
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Protocol
from urllib.parse import quote, urlencode

from botocore.exceptions import BotoCoreError, ClientError

from export_engine.exports.exceptions import TransientIOError
from export_engine.exports.value_objects import ExportFormat, ExportId
from export_engine.utils.logger import get_logger

logger = get_logger(__name__)

TEMP_DIRECTORY = "temp"
TEMP_FILE_PREFIX = "temp_export_"
FINAL_DIRECTORY = "final"


class FileStore(Protocol):
    def put(self, local_path: str, key: str, content_type: Optional[str] = None) -> str:
        ...

    def delete(self, path: str) -> None:
        ...

    def exists(self, path: str) -> bool:
        ...

    def signed_url(self, path: str, expires_in_seconds: int, now: Optional[datetime] = None) -> str:
        ...


def build_artifact_key(export_id: ExportId, export_format: ExportFormat, now: datetime) -> str:
    timestamp = now.strftime("%Y-%m-%d_%H-%M-%S")
    return f"{FINAL_DIRECTORY}/export_{export_id}_{timestamp}.{export_format.extension}"


def create_temp_file_path(base_dir: str, export_id: ExportId, export_format: ExportFormat, run_token: str) -> str:
    """Temp file owned exclusively by the worker run holding ``run_token``."""
    temp_dir = Path(base_dir) / TEMP_DIRECTORY
    temp_dir.mkdir(parents=True, exist_ok=True)
    return str(temp_dir / f"{TEMP_FILE_PREFIX}{export_id}_{run_token}.{export_format.extension}")


def cleanup_old_temp_files(base_dir: str, max_age_hours: int, now: Optional[datetime] = None) -> List[str]:
    """
    Removes temp files older than ``max_age_hours``. These are left behind
    when a worker process is killed before its run can clean up.

    Returns the names of the removed files.
    """
    temp_dir = Path(base_dir) / TEMP_DIRECTORY
    if not temp_dir.is_dir():
        return []

    now = now or datetime.utcnow()
    cutoff = calendar.timegm((now - timedelta(hours=max_age_hours)).utctimetuple())
    removed = []
    for path in temp_dir.glob(f"{TEMP_FILE_PREFIX}*"):
        try:
            if not path.is_file() or path.stat().st_mtime >= cutoff:
                continue
            path.unlink()
        except OSError as e:
            logger.warning("Failed to remove old temp export file", path=str(path), error=str(e))
            continue
        removed.append(path.name)

    if removed:
        logger.info("Removed old temp export files", count=len(removed), max_age_hours=max_age_hours)
    return removed


def discard_file(path: Optional[str]) -> None:
    """Remove a local file if present, logging instead of raising."""
    if not path:
        return
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning("Failed to remove local export file", path=path, error=str(e))


class LocalFileStore:
    """
    Stores artifacts under ``root_dir`` and signs download URLs with HMAC-SHA256.
    Paths persisted on the job are relative to ``root_dir``.
    """

    def __init__(self, root_dir: str, base_url: str, secret: str):
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self.secret = secret.encode("utf-8")

    def absolute_path(self, path: str) -> Path:
        resolved = (self.root_dir / path).resolve()
        if self.root_dir.resolve() not in resolved.parents:
            raise ValueError(f"Path escapes export storage root: {path}")
        return resolved

    def put(self, local_path: str, key: str, content_type: Optional[str] = None) -> str:
        destination = self.absolute_path(key)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(local_path, destination)
        except OSError as e:
            raise TransientIOError(f"Failed to store export file: {e}") from e
        logger.info("Stored export file", path=key, content_type=content_type)
        return key

    def delete(self, path: str) -> None:
        target = self.absolute_path(path)
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            raise TransientIOError(f"Failed to delete export file: {e}") from e

    def exists(self, path: str) -> bool:
        return self.absolute_path(path).is_file()

    def _signature(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode("utf-8")
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()

    def signed_url(self, path: str, expires_in_seconds: int, now: Optional[datetime] = None) -> str:
        issued_at = calendar.timegm(now.utctimetuple()) if now is not None else int(time.time())
        expires = issued_at + expires_in_seconds
        query = urlencode({"expires": expires, "signature": self._signature(path, expires)})
        return f"{self.base_url}/{quote(path)}?{query}"

    def verify_signature(self, path: str, expires: int, signature: str, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        if expires < current:
            return False
        return hmac.compare_digest(self._signature(path, expires), signature)


class S3FileStore:
    """Stores artifacts in S3 under ``prefix``; downloads use presigned URLs."""

    def __init__(self, s3_utils, prefix: str = "exports"):
        self.s3 = s3_utils
        self.prefix = prefix.strip("/")

    def _key(self, path: str) -> str:
        if not self.prefix or path.startswith(f"{self.prefix}/"):
            return path
        return f"{self.prefix}/{path}"

    def put(self, local_path: str, key: str, content_type: Optional[str] = None) -> str:
        s3_key = self._key(key)
        if not self.s3.upload_local_file(local_path, s3_key, content_type=content_type):
            raise TransientIOError(f"Failed to upload export file to S3: {s3_key}")
        discard_file(local_path)
        logger.info("Uploaded export file to S3", key=s3_key)
        return s3_key

    def delete(self, path: str) -> None:
        if not self.s3.delete_file(self._key(path)):
            raise TransientIOError(f"Failed to delete export file from S3: {path}")

    def exists(self, path: str) -> bool:
        try:
            return self.s3.file_exists(self._key(path))
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"Failed to check export file in S3: {e}") from e

    def signed_url(self, path: str, expires_in_seconds: int, now: Optional[datetime] = None) -> str:
        # S3 anchors presigned URLs to its own signing time
        url = self.s3.generate_presigned_url(self._key(path), expiration=expires_in_seconds)
        if not url:
            raise TransientIOError(f"Failed to sign download URL for {path}")
        return url
