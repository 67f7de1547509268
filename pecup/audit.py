"""
Audit trail for administrative mutations.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pecup.db import DbClient
from pecup.errors import DbError
from pecup.types import UserRole

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ("password", "token", "secret", "key", "auth", "email")


def sanitize_for_logging(payload: Any) -> Any:
    """Redact sensitive keys before a payload reaches the logs."""
    if isinstance(payload, dict):
        return {
            key: "[REDACTED]"
            if any(marker in str(key).lower() for marker in SENSITIVE_KEYS)
            else sanitize_for_logging(value)
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [sanitize_for_logging(item) for item in payload]
    return payload


def audit_role(role: str) -> str:
    # The audit table only knows admin roles; representatives log as admin.
    if role == UserRole.SUPERADMIN.value:
        return UserRole.SUPERADMIN.value
    return UserRole.ADMIN.value


def log_audit(
    db: DbClient,
    *,
    actor_email: str,
    actor_role: str,
    action: str,
    entity: str,
    entity_id: Optional[str] = None,
    success: bool = True,
    message: Optional[str] = None,
    before_data: Any = None,
    after_data: Any = None,
) -> None:
    """
    Insert an ``audit_logs`` row.

    A failed audit write is logged and does not fail the request that
    triggered it.
    """
    try:
        db.insert(
            "audit_logs",
            {
                "actor_email": actor_email,
                "actor_role": audit_role(actor_role),
                "action": action,
                "entity": entity,
                "entity_id": entity_id,
                "success": success,
                "message": message,
                "before_data": before_data,
                "after_data": after_data,
            },
        )
    except DbError:
        logger.exception("Failed to write audit log for %s %s", action, entity)
