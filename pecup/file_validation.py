"""
Upload whitelist checks.

Magic bytes are trusted over the client's claimed MIME type; when no known
signature is found, both the extension and the claimed MIME type must be on
the allow-list.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from pecup.config import DEFAULT_ALLOWED_EXTENSIONS, DEFAULT_ALLOWED_MIME_TYPES

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


@dataclass
class ValidationResult:
    ok: bool
    detected_mime: Optional[str] = None
    reason: Optional[str] = None


def _split(value: Optional[str], default: str, *, strip_dot: bool = False) -> set[str]:
    source = value if value and value.strip() else default
    items = set()
    for item in source.split(","):
        item = item.strip().lower()
        if strip_dot:
            item = item.lstrip(".")
        if item:
            items.add(item)
    return items


def allowed_mime_types(configured: Optional[str] = None) -> set[str]:
    return _split(configured, DEFAULT_ALLOWED_MIME_TYPES)


def allowed_extensions(configured: Optional[str] = None) -> set[str]:
    return _split(configured, DEFAULT_ALLOWED_EXTENSIONS, strip_dot=True)


def file_extension(filename: str) -> str:
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[1].lower()


def sniff_mime(data: bytes) -> Optional[str]:
    if not data or len(data) < 4:
        return None
    if data[:5] == b"%PDF-":
        return "application/pdf"
    if data[:8] == PNG_SIGNATURE:
        return "image/png"
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def validate_file(
    data: bytes,
    filename: str,
    client_mime: Optional[str] = None,
    *,
    allowed_mimes: Optional[set[str]] = None,
    allowed_exts: Optional[set[str]] = None,
) -> ValidationResult:
    allowed_mimes = allowed_mimes if allowed_mimes is not None else allowed_mime_types()
    allowed_exts = allowed_exts if allowed_exts is not None else allowed_extensions()

    ext = file_extension(filename or "")
    claimed = (client_mime or "").lower()
    detected = sniff_mime(data)

    if detected:
        if detected not in allowed_mimes:
            return ValidationResult(
                ok=False,
                detected_mime=detected,
                reason=f"Disallowed file signature: {detected}",
            )
        return ValidationResult(ok=True, detected_mime=detected)

    ext_allowed = bool(ext) and ext in allowed_exts
    mime_allowed = bool(claimed) and claimed in allowed_mimes
    if ext_allowed and mime_allowed:
        return ValidationResult(ok=True, detected_mime=claimed or None)

    if not ext_allowed and not mime_allowed:
        reason = "File extension and MIME type are not allowed"
    elif not ext_allowed:
        reason = "File extension is not allowed"
    else:
        reason = "MIME type is not allowed"
    return ValidationResult(ok=False, detected_mime=claimed or None, reason=reason)
