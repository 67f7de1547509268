"""
Profile, lookup, user-context and student roster endpoints.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, Query

from pecup.academic_config import AcademicConfigManager
from pecup.audit import log_audit, sanitize_for_logging
from pecup.auth import get_session_email
from pecup.cache import AcademicCaches
from pecup.config import Settings, get_settings
from pecup.db import DbClient, query
from pecup.dependencies import get_academic_config, get_caches, get_db_client
from pecup.errors import BadRequest, Conflict, UniqueViolation, Unauthorized, UnprocessableEntity
from pecup.lookups import ProfileRelations, load_profile_relations
from pecup.permissions import UserContext, get_user_permissions, require_admin
from pecup.routes.common import EMAIL_PATTERN, get_user_context, parse_page, require_session
from pecup.schemas import ProfileUpdate, StudentCreate

logger = logging.getLogger(__name__)

router = APIRouter()

PROFILE_REQUIRED_FIELDS = (
    ("name", "Name"),
    ("branch_id", "Branch ID"),
    ("year_id", "Year ID"),
    ("semester_id", "Semester ID"),
    ("roll_number", "Roll number"),
)


def _profile_payload(
    relations: ProfileRelations, academic_config: AcademicConfigManager
) -> dict:
    """Profile with relations plus the legacy ``year``/``branch`` fields."""
    for name in ("branch", "year", "semester"):
        if getattr(relations, name) is None:
            logger.warning("Profile %s has no %s relation", relations.profile["id"], name)
    batch_year = relations.year["batch_year"] if relations.year else None
    return {
        **relations.profile,
        "semester": relations.semester,
        "year": academic_config.calculate_academic_year(batch_year) if batch_year else 1,
        "branch": relations.branch["code"] if relations.branch else "Unknown",
        "role": relations.profile.get("role") or "student",
    }


@router.get("/profile")
def get_profile(
    email: str = Depends(require_session),
    db: DbClient = Depends(get_db_client),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
):
    relations = load_profile_relations(db, email)
    if relations is None:
        return {"profile": None}
    return {"profile": _profile_payload(relations, academic_config)}


@router.post("/profile")
def save_profile(
    payload: ProfileUpdate,
    email: str = Depends(require_session),
    db: DbClient = Depends(get_db_client),
    caches: AcademicCaches = Depends(get_caches),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
):
    """
    Create or update the caller's profile (onboarding and profile edits).
    """
    values = payload.model_dump()
    for field_name, label in PROFILE_REQUIRED_FIELDS:
        if not (values.get(field_name) or "").strip():
            raise BadRequest(f"{label} is required and must be a string")

    if not db.get("branches", payload.branch_id):
        raise UnprocessableEntity("Invalid branch ID")
    if not db.get("years", payload.year_id):
        raise UnprocessableEntity("Invalid year ID")
    if not db.get("semesters", payload.semester_id):
        raise UnprocessableEntity("Invalid semester ID")

    row = {
        "email": email,
        "name": payload.name.strip(),
        "roll_number": payload.roll_number.strip(),
        "branch_id": payload.branch_id,
        "year_id": payload.year_id,
        "semester_id": payload.semester_id,
        "section": payload.section,
    }
    try:
        db.upsert("profiles", row, on_conflict=["email"])
    except UniqueViolation as exc:
        logger.warning("Profile update rejected: %s", sanitize_for_logging(row))
        raise BadRequest("Roll number or email already exists") from exc

    caches.invalidate_profile(email)
    relations = load_profile_relations(db, email)
    return {"profile": _profile_payload(relations, academic_config)}


@router.get("/profile/lookup-data")
def lookup_data(db: DbClient = Depends(get_db_client)):
    years = db.select(query("years").order("batch_year", desc=True))
    years_by_id = {year["id"]: year for year in years}
    semesters = db.select(query("semesters").order("year_id").order("semester_number"))
    return {
        "branches": db.select(query("branches").order("code")),
        "years": years,
        "semesters": [
            {**semester, "year": years_by_id.get(semester["year_id"])}
            for semester in semesters
        ],
    }


@router.get("/user/context")
def user_context(ctx: Optional[UserContext] = Depends(get_user_context)):
    if ctx is None:
        raise Unauthorized()
    return {"userContext": ctx.as_dict(), "permissions": get_user_permissions(ctx)}


@router.get("/students")
def list_students(
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    branch_id: Optional[str] = Query(None),
    year_id: Optional[str] = Query(None),
    semester_id: Optional[str] = Query(None),
    section: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    require_admin(db, email, settings)
    paging = parse_page(page, limit)

    def build():
        q = query("profiles")
        for column, value in (
            ("branch_id", branch_id),
            ("year_id", year_id),
            ("semester_id", semester_id),
            ("section", section),
        ):
            if value:
                q.eq(column, value)
        if search:
            q.search(("name", "email", "roll_number"), search)
        return q

    total = db.count(build())
    students = db.select(
        build().order("created_at", desc=True).limit(paging.limit).offset(paging.offset)
    )
    return {
        "students": students,
        "total": total,
        "page": paging.page,
        "limit": paging.limit,
        "totalPages": math.ceil(total / paging.limit),
    }


@router.post("/students", status_code=201)
def create_student(
    payload: StudentCreate,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    admin = require_admin(db, email, settings)
    if not all(
        [
            payload.roll_number,
            payload.name,
            payload.email,
            payload.branch_id,
            payload.year_id,
            payload.semester_id,
        ]
    ):
        raise BadRequest(
            "Missing required fields: roll_number, name, email, branch_id, year_id, semester_id"
        )

    name = payload.name.strip()
    roll_number = payload.roll_number.strip()
    student_email = payload.email.strip()
    problems = []
    if not EMAIL_PATTERN.match(student_email):
        problems.append("Invalid email format")
    if not 1 <= len(name) <= 100:
        problems.append("Name must be 1-100 characters")
    if not 1 <= len(roll_number) <= 20:
        problems.append("Roll number must be 1-20 characters")
    if len(student_email) > 254:
        problems.append("Email must not exceed 254 characters")
    if problems:
        raise BadRequest("Validation failed", details={"problems": problems})

    if not db.get("branches", payload.branch_id):
        raise BadRequest("Invalid branch ID")
    if not db.get("years", payload.year_id):
        raise BadRequest("Invalid year ID")
    semester = db.get("semesters", payload.semester_id)
    if not semester or semester["year_id"] != payload.year_id:
        raise BadRequest("Invalid semester ID or semester does not belong to the specified year")

    try:
        student = db.insert(
            "profiles",
            {
                "roll_number": roll_number,
                "name": name,
                "email": student_email.lower(),
                "branch_id": payload.branch_id,
                "year_id": payload.year_id,
                "semester_id": payload.semester_id,
                "section": payload.section,
                "role": "student",
            },
        )
    except UniqueViolation as exc:
        raise Conflict("Student with this roll number or email already exists") from exc

    log_audit(
        db,
        actor_email=admin.email,
        actor_role=admin.role,
        action="create",
        entity="student",
        entity_id=student["id"],
        after_data=student,
    )
    return {"student": student}
