"""
Helpers for stored resource files: uploads, URL parsing, short-lived
signed access tokens and a per-user rate limit for issuing them.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

from jose import JWTError, jwt

from pecup.config import Settings
from pecup.errors import PayloadTooLarge, UnsupportedMediaType
from pecup.file_validation import allowed_extensions, allowed_mime_types, validate_file
from pecup.storage import StorageClient, StorageError

logger = logging.getLogger(__name__)

DRIVE_ID_PATTERN = re.compile(r"/file/d/([a-zA-Z0-9_-]+)")
STORAGE_PATH_PATTERN = re.compile(r"/object/public/([^/]+)/(.+)$")
UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def try_parse_drive_id_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    match = DRIVE_ID_PATTERN.search(url)
    return match.group(1) if match else None


def try_parse_storage_path_from_url(url: Optional[str]) -> Optional[tuple[str, str]]:
    """Return ``(bucket, path)`` for a public storage URL."""
    if not url:
        return None
    match = STORAGE_PATH_PATTERN.search(url)
    if not match:
        return None
    return match.group(1), match.group(2)


def is_drive_url(url: Optional[str]) -> bool:
    return bool(url) and "drive.google.com" in url


@dataclass
class StoredFile:
    path: str
    url: str
    mime_type: str
    is_pdf: bool


def store_upload(
    storage: StorageClient,
    settings: Settings,
    data: bytes,
    filename: str,
    content_type: Optional[str],
) -> StoredFile:
    """Validate an upload against size and type limits, then store it."""
    if len(data) > settings.max_upload_bytes:
        raise PayloadTooLarge(
            f"File too large. Max {settings.max_upload_bytes // (1024 * 1024)}MB"
        )
    result = validate_file(
        data,
        filename,
        content_type,
        allowed_mimes=allowed_mime_types(settings.allowed_upload_mime_types),
        allowed_exts=allowed_extensions(settings.allowed_upload_extensions),
    )
    if not result.ok:
        raise UnsupportedMediaType(result.reason or "Unsupported file type")

    mime_type = result.detected_mime or content_type or "application/octet-stream"
    safe_name = UNSAFE_FILENAME_CHARS.sub("_", filename or "upload")
    path = f"{int(time.time() * 1000)}-{safe_name}"
    storage.upload_bytes(path, data, mime_type)
    logger.info("Stored upload %s (%s, %d bytes)", path, mime_type, len(data))
    return StoredFile(
        path=path,
        url=storage.public_url(path),
        mime_type=mime_type,
        is_pdf=mime_type == "application/pdf" or safe_name.lower().endswith(".pdf"),
    )


def delete_stored_file(storage: StorageClient, url: Optional[str]) -> bool:
    """
    Remove the blob behind a resource URL.

    Returns ``False`` when the URL is not one of ours or removal failed;
    Drive-hosted files are managed outside this service.
    """
    parsed = try_parse_storage_path_from_url(url)
    if not parsed:
        return False
    bucket, path = parsed
    if bucket != storage.bucket:
        logger.warning("Refusing to delete %s from foreign bucket %s", path, bucket)
        return False
    try:
        storage.delete(path)
    except FileNotFoundError:
        logger.warning("Stored file %s already missing", path)
        return False
    except StorageError:
        logger.exception("Failed to delete stored file %s", path)
        return False
    return True


def release_resource_file(storage: StorageClient, url: Optional[str]) -> bool:
    """
    Release whatever backs a resource before its row is removed.

    External links have nothing to release. Rows without a URL, or whose
    file could not be removed, should be kept as soft-deleted.
    """
    if not url:
        return False
    if try_parse_storage_path_from_url(url):
        return delete_stored_file(storage, url)
    if is_drive_url(url):
        logger.warning("Drive file %s must be removed from Drive directly", url)
        return False
    return True


def create_file_token(
    resource_id: str, email: str, settings: Settings, now: Optional[float] = None
) -> tuple[str, int]:
    """Return a signed token for one resource and its expiry (epoch seconds)."""
    issued = int(now if now is not None else time.time())
    expires_at = issued + settings.secure_url_ttl_seconds
    claims = {"rid": resource_id, "sub": email, "iat": issued, "exp": expires_at}
    token = jwt.encode(claims, settings.auth_secret or "", algorithm=settings.auth_algorithm)
    return token, expires_at


def verify_file_token(token: str, settings: Settings) -> Optional[dict]:
    try:
        claims = jwt.decode(
            token, settings.auth_secret or "", algorithms=[settings.auth_algorithm]
        )
    except JWTError as exc:
        logger.info("Rejected file token: %s", exc)
        return None
    if not claims.get("rid"):
        return None
    return claims


@dataclass
class RateLimiter:
    """Sliding-window limiter keyed by caller."""

    limit: int
    window_seconds: int
    clock: Callable[[], float] = time.time
    hits: Dict[str, Deque[float]] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            self._prune(now)
            bucket = self.hits.setdefault(key, deque())
            if len(bucket) >= self.limit:
                return False
            bucket.append(now)
            return True

    def _prune(self, now: float) -> None:
        for key in list(self.hits):
            bucket = self.hits[key]
            while bucket and now - bucket[0] >= self.window_seconds:
                bucket.popleft()
            if not bucket:
                del self.hits[key]

    def reset(self) -> None:
        with self._lock:
            self.hits.clear()
