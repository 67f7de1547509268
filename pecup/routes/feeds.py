"""
Student-facing feeds: reminders, recent updates, the exam "prime" section,
resource listings and secure file delivery.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response

from pecup.academic_config import AcademicConfigManager
from pecup.auth import get_session_email
from pecup.bulk import utc_today
from pecup.config import Settings, get_settings
from pecup.db import DbClient, query
from pecup.dependencies import (
    get_academic_config,
    get_db_client,
    get_secure_url_limiter,
    get_storage_client,
)
from pecup.errors import BadRequest, DbError, Forbidden, InternalError, NotFound, TooManyRequests
from pecup.files import RateLimiter, create_file_token, try_parse_storage_path_from_url, verify_file_token
from pecup.permissions import UserContext, can_access_resource
from pecup.routes.common import get_user_context, profile_context, require_session, to_int
from pecup.schemas import SecureUrlResponse
from pecup.storage import StorageClient

logger = logging.getLogger(__name__)

router = APIRouter()


def _resource_summary(resource: dict) -> dict:
    return {
        "id": resource["id"],
        "name": resource.get("name") or resource.get("title") or "",
        "description": resource.get("description") or "",
        "date": resource.get("date") or "",
        "type": resource.get("type") or "",
        "url": resource.get("url") or resource.get("drive_link") or "",
    }


@router.get("/reminders")
def list_reminders(
    status: Optional[str] = Query(None),
    year: Optional[str] = Query(None),
    branch: Optional[str] = Query(None),
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
):
    if year and not re.fullmatch(r"\d+", year):
        raise BadRequest("Invalid year parameter")
    year_value = int(year) if year else None
    if year_value is None or not branch:
        profile_branch, profile_year, _ = profile_context(db, academic_config, email)
        year_value = year_value or profile_year
        branch = branch or profile_branch

    q = query("reminders").is_null("deleted_at").order("due_date")
    if status and status.strip():
        q.eq("status", status.strip())
    if year_value:
        q.eq("year", year_value)
    if branch:
        q.eq("branch", branch)
    return [
        {
            "id": reminder["id"],
            "title": reminder["title"],
            "due_date": reminder["due_date"],
            "description": reminder.get("description"),
            "icon_type": reminder.get("icon_type"),
            "status": reminder.get("status"),
        }
        for reminder in db.select(q)
    ]


@router.get("/recent-updates")
def list_recent_updates(
    year: Optional[str] = Query(None),
    branch: Optional[str] = Query(None),
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
):
    year_value = to_int(year)
    if year_value is None or not branch:
        profile_branch, profile_year, _ = profile_context(db, academic_config, email)
        year_value = year_value or profile_year
        branch = branch or profile_branch

    q = query("recent_updates").order("created_at", desc=True).limit(10)
    if year_value and branch:
        q.eq("year", year_value).eq("branch", branch)
    return [
        {
            "id": update["id"],
            "title": update.get("title") or "No Title",
            "date": update.get("date") or "",
            "description": update.get("description") or "",
        }
        for update in db.select(q)
    ]


@router.get("/prime-section-data")
def prime_section_data(
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    """
    Exams on the soonest upcoming exam date and resources for their subjects.
    """
    today = utc_today()
    end = today + timedelta(days=settings.prime_exam_window_days)
    exams = db.select(
        query("exams")
        .is_null("deleted_at")
        .gte("exam_date", today.isoformat())
        .lte("exam_date", end.isoformat())
        .order("exam_date")
    )
    upcoming = [
        {"subject": exam.get("subject") or "", "examDate": exam["exam_date"][:10]}
        for exam in exams
    ]
    if not upcoming:
        return {"upcomingExams": [], "resources": []}

    soonest = upcoming[0]["examDate"]
    on_soonest = [exam for exam in upcoming if exam["examDate"] == soonest]
    subjects = sorted({exam["subject"] for exam in on_soonest if exam["subject"]})

    resources: list[dict] = []
    if subjects:
        try:
            rows = db.select(
                query("resources")
                .in_("subject", subjects)
                .is_null("deleted_at")
                .order("date", desc=True)
            )
        except DbError:
            logger.exception("Prime section resources query failed")
            rows = []
        resources = [
            {key: value for key, value in _resource_summary(row).items() if key != "id"}
            for row in rows
        ]
    return {"upcomingExams": on_soonest, "resources": resources}


@router.get("/resources")
def list_resources(
    category: Optional[str] = Query(None),
    subject: Optional[str] = Query(None),
    unit: Optional[str] = Query(None),
    db: DbClient = Depends(get_db_client),
):
    if not category or not subject or not unit:
        raise BadRequest("Missing required query parameters: category, subject, unit")
    unit_number = to_int(unit)
    if unit_number is None or unit_number <= 0:
        raise BadRequest("Invalid unit number")

    rows = db.select(
        query("resources")
        .eq("category", category.lower())
        .eq("subject", subject.lower())
        .eq("unit", unit_number)
        .eq("archived", False)
        .is_null("deleted_at")
        .order("date", desc=True)
    )
    return [_resource_summary(row) for row in rows]


@router.get("/resources/{resource_id}/secure-url", response_model=SecureUrlResponse)
def secure_url(
    resource_id: str,
    email: str = Depends(require_session),
    ctx: Optional[UserContext] = Depends(get_user_context),
    db: DbClient = Depends(get_db_client),
    limiter: RateLimiter = Depends(get_secure_url_limiter),
    settings: Settings = Depends(get_settings),
):
    """
    Issue a short-lived link to ``/secure-file/{token}`` for one resource.
    """
    if ctx is None:
        raise Forbidden("Could not verify user permissions")
    if not limiter.allow(email):
        raise TooManyRequests("Too many secure URL requests; try again shortly")
    if not settings.auth_secret:
        raise InternalError("Secure file links are not configured")

    resource = db.get("resources", resource_id)
    if not resource or resource.get("deleted_at") or not can_access_resource(ctx, resource):
        raise Forbidden("Access denied or resource not found")

    now = int(time.time())
    token, expires_at = create_file_token(resource_id, email, settings, now=now)
    body = SecureUrlResponse(
        secureUrl=f"{settings.api_prefix}/secure-file/{token}",
        expiresAt=datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat(),
        expiresInSeconds=expires_at - now,
    )
    return JSONResponse(
        content=body.model_dump(),
        headers={
            "Cache-Control": "no-store, max-age=0, must-revalidate",
            "Pragma": "no-cache",
        },
    )


@router.get("/secure-file/{token}")
def secure_file(
    token: str,
    email: str = Depends(require_session),
    ctx: Optional[UserContext] = Depends(get_user_context),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
):
    claims = verify_file_token(token, settings)
    if claims is None:
        raise Forbidden("Invalid or expired token")
    if ctx is None:
        raise Forbidden("Could not verify permissions")

    resource = db.get("resources", claims["rid"])
    if not resource or resource.get("deleted_at"):
        raise NotFound("File not available")
    if not can_access_resource(ctx, resource):
        logger.warning("Secure file access denied for %s to %s", email, claims["rid"])
        raise Forbidden("Access denied")

    parsed = try_parse_storage_path_from_url(resource.get("url"))
    if not parsed or parsed[0] != storage.bucket:
        raise NotFound("File not available")
    try:
        content = storage.get_bytes(parsed[1])
    except FileNotFoundError as exc:
        raise NotFound("File not available") from exc

    media_type = resource.get("file_type") or "application/pdf"
    filename = parsed[1].rsplit("/", 1)[-1]
    return Response(
        content=content,
        media_type=media_type,
        headers={
            "Content-Disposition": f'inline; filename="{filename}"',
            "Cache-Control": "private, no-cache",
            "X-Content-Type-Options": "nosniff",
        },
    )
