"""
Error types shared by the route handlers and the data layer.

Route handlers raise ``ApiError`` subclasses; ``pecup.app`` renders them as
``{"ok": false, "error": {"code": ..., "message": ...}}``.
"""

from __future__ import annotations

from typing import Optional


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, details: Optional[dict] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def as_payload(self) -> dict:
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"ok": False, "error": error}


class BadRequest(ApiError):
    status_code = 400
    code = "BAD_REQUEST"
    default_message = "Bad request"


class Unauthorized(ApiError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class Forbidden(ApiError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Forbidden"


class NotFound(ApiError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class Conflict(ApiError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Conflict"


class PayloadTooLarge(ApiError):
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"
    default_message = "File too large"


class UnsupportedMediaType(ApiError):
    status_code = 415
    code = "UNSUPPORTED_MEDIA_TYPE"
    default_message = "Unsupported file type"


class UnprocessableEntity(ApiError):
    status_code = 422
    code = "UNPROCESSABLE_ENTITY"
    default_message = "Unprocessable entity"


class TooManyRequests(ApiError):
    status_code = 429
    code = "TOO_MANY_REQUESTS"
    default_message = "Rate limit exceeded"


class InternalError(ApiError):
    pass


class DbError(Exception):
    """Raised by database clients when a statement fails."""


class UniqueViolation(DbError):
    """Raised when a write collides with a unique constraint."""
