"""
Helpers shared by the route modules: request parsing, pagination and the
caller's identity.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from fastapi import Depends, Request
from starlette.datastructures import UploadFile

from pecup.academic_config import AcademicConfigManager
from pecup.auth import get_session_email
from pecup.db import DbClient
from pecup.dependencies import get_db_client
from pecup.errors import BadRequest, Unauthorized
from pecup.lookups import batch_year_for_level, load_profile_relations, year_id_by_batch_year
from pecup.permissions import UserContext, load_user_context

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class Upload:
    filename: str
    content_type: Optional[str]
    data: bytes


@dataclass
class Page:
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def meta(self, count: int, sort: Optional[str] = None, order: Optional[str] = None) -> dict:
        meta = {
            "page": self.page,
            "limit": self.limit,
            "count": count,
            "totalPages": math.ceil(count / self.limit) if count else 1,
        }
        if sort is not None:
            meta["sort"] = sort
            meta["order"] = order
        return meta


def to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = re.match(r"^\s*(-?\d+)", str(value))
    return int(match.group(1)) if match else None


def to_bool(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_page(page: Any, limit: Any, *, default_limit: int = 20, max_limit: int = 100) -> Page:
    raw_page = to_int(page)
    raw_limit = to_int(limit)
    return Page(
        page=max(1, raw_page) if raw_page is not None else 1,
        limit=min(max_limit, max(1, raw_limit)) if raw_limit is not None else default_limit,
    )


def parse_sort(
    sort: Optional[str],
    order: Optional[str],
    allowed: tuple[str, ...],
    default: str,
    default_order: str = "desc",
) -> tuple[str, str]:
    resolved_sort = sort if sort in allowed else default
    resolved_order = order if order in ("asc", "desc") else default_order
    return resolved_sort, resolved_order


def is_valid_date(value: str) -> bool:
    if not DATE_PATTERN.match(value or ""):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def clean_str(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def optional_str(value: Any) -> Optional[str]:
    text = clean_str(value)
    return text or None


async def read_body(request: Request) -> tuple[dict, Optional[Upload]]:
    """
    Parse a JSON or multipart body into plain fields and an optional file.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        fields: dict = {}
        upload = None
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if key == "file" and value.filename:
                    upload = Upload(
                        filename=value.filename,
                        content_type=value.content_type,
                        data=await value.read(),
                    )
            else:
                fields[key] = value
        return fields, upload
    raw = await request.body()
    if not raw:
        return {}, None
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise BadRequest("Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise BadRequest("Request body must be an object")
    return payload, None


def require_session(email: Optional[str] = Depends(get_session_email)) -> str:
    if not email:
        raise Unauthorized()
    return email


def get_user_context(
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
) -> Optional[UserContext]:
    return load_user_context(db, email)


def resolve_year_id(
    db: DbClient, academic_config: AcademicConfigManager, year: Optional[int]
) -> Optional[str]:
    """
    Map a year (academic year 1-4, or a batch year) to a ``years.id``.
    """
    if not year:
        return None
    if 1 <= year <= 4:
        try:
            batch_year = academic_config.academic_year_to_batch_year(year)
        except ValueError:
            batch_year = batch_year_for_level(year)
        return year_id_by_batch_year(db, batch_year)
    return year_id_by_batch_year(db, year)


def profile_context(
    db: DbClient, academic_config: AcademicConfigManager, email: Optional[str]
) -> tuple[Optional[str], Optional[int], Optional[int]]:
    """The caller's (branch code, academic year, semester number), where known."""
    if not email:
        return None, None, None
    relations = load_profile_relations(db, email)
    if relations is None:
        return None, None, None
    branch = relations.branch["code"] if relations.branch else None
    year = (
        academic_config.calculate_academic_year(relations.year["batch_year"])
        if relations.year
        else None
    )
    semester = relations.semester["semester_number"] if relations.semester else None
    return branch, year, semester
