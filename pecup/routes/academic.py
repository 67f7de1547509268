"""
Academic structure endpoints: the bulk home-screen payload, branches,
years, subjects, the academic calendar and a few public widgets.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from pecup.academic_config import AcademicConfigManager
from pecup.audit import log_audit
from pecup.auth import get_session_email
from pecup.bulk import BulkAcademicDataService
from pecup.cache import AcademicCaches
from pecup.config import Settings, get_settings
from pecup.db import DbClient, query
from pecup.dependencies import get_academic_config, get_caches, get_db_client
from pecup.errors import BadRequest, Conflict, DbError, InternalError, NotFound, UniqueViolation
from pecup.lookups import (
    batch_year_for_level,
    default_semester_for_month,
    semester_id,
)
from pecup.permissions import require_admin
from pecup.routes.common import profile_context, require_session, to_int
from pecup.schemas import (
    BranchCreate,
    CalendarAction,
    CalendarUpdate,
    HealthResponse,
    MappingRequest,
    MappingResponse,
    UsersCountResponse,
    YearCreate,
)
from pecup.tables import utc_now_iso
from pecup.types import AdminRole

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_HERO_TEXTS = ["for any errors, report them in Whatsapp Group"]
DEFAULT_REGULATION = "R23"


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse()


@router.get("/bulk-academic-data")
def bulk_academic_data(
    refresh: bool = Query(False),
    email: str = Depends(require_session),
    db: DbClient = Depends(get_db_client),
    caches: AcademicCaches = Depends(get_caches),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
    settings: Settings = Depends(get_settings),
):
    """
    Everything the home screen needs in one round trip.
    """
    service = BulkAcademicDataService(db, caches, academic_config, settings)
    return service.load(email, refresh=refresh)


@router.get("/branches")
def list_branches(db: DbClient = Depends(get_db_client)):
    return {"branches": db.select(query("branches").order("code"))}


@router.post("/branches", status_code=201)
def create_branch(
    payload: BranchCreate,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    caches: AcademicCaches = Depends(get_caches),
    settings: Settings = Depends(get_settings),
):
    admin = require_admin(db, email, settings)
    name = (payload.name or "").strip()
    code = (payload.code or "").strip().upper()
    if not name or not code:
        raise BadRequest("Name and code are required")
    try:
        branch = db.insert("branches", {"name": name, "code": code})
    except UniqueViolation as exc:
        raise Conflict("Branch code already exists") from exc
    caches.invalidate_static()
    log_audit(
        db,
        actor_email=admin.email,
        actor_role=admin.role,
        action="create",
        entity="branch",
        entity_id=branch["id"],
        after_data=branch,
    )
    return {"branch": branch}


@router.get("/years")
def list_years(db: DbClient = Depends(get_db_client)):
    return {"years": db.select(query("years").order("batch_year", desc=True))}


@router.post("/years", status_code=201)
def create_year(
    payload: YearCreate,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    caches: AcademicCaches = Depends(get_caches),
    settings: Settings = Depends(get_settings),
):
    """
    Create a batch year together with its two semesters.
    """
    admin = require_admin(db, email, settings)
    if payload.batch_year is None or not (payload.display_name or "").strip():
        raise BadRequest("Batch year and display name are required")
    if not 2020 <= payload.batch_year <= 2030:
        raise BadRequest("Batch year must be between 2020 and 2030")
    try:
        year = db.insert(
            "years",
            {"batch_year": payload.batch_year, "display_name": payload.display_name.strip()},
        )
    except UniqueViolation as exc:
        raise Conflict("Batch year already exists") from exc

    try:
        semesters = [
            db.insert("semesters", {"semester_number": number, "year_id": year["id"]})
            for number in (1, 2)
        ]
    except DbError as exc:
        logger.exception("Semester creation failed for year %s; rolling back", year["id"])
        db.delete(query("semesters").eq("year_id", year["id"]))
        db.delete(query("years").eq("id", year["id"]))
        raise InternalError("Failed to create semesters for year") from exc

    caches.invalidate_static()
    log_audit(
        db,
        actor_email=admin.email,
        actor_role=admin.role,
        action="create",
        entity="year",
        entity_id=year["id"],
        after_data=year,
    )
    return {"year": {**year, "semesters": semesters}}


@router.get("/subjects")
def list_subjects(
    year: Optional[str] = Query(None),
    branch: Optional[str] = Query(None),
    semester: Optional[str] = Query(None),
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
):
    """
    Subjects for a context; missing values are taken from the caller's profile.
    """
    year_value, semester_value = to_int(year), to_int(semester)
    if not (year_value and branch and semester_value):
        profile_branch, profile_year, profile_semester = profile_context(
            db, academic_config, email
        )
        year_value = year_value or profile_year
        branch = branch or profile_branch
        semester_value = semester_value or profile_semester or default_semester_for_month()

    if not (year_value and branch and semester_value):
        raise BadRequest("Missing context (year/branch/semester).")

    offerings = db.select(
        query("subject_offerings")
        .eq("regulation", DEFAULT_REGULATION)
        .eq("year", year_value)
        .eq("branch", branch)
        .eq("semester", semester_value)
        .eq("active", True)
        .order("display_order")
    )
    if offerings:
        subjects_by_id = {
            subject["id"]: subject
            for subject in db.select(
                query("subjects").in_("id", [o["subject_id"] for o in offerings])
            )
        }
        subjects = [
            {
                "id": subject["id"],
                "code": subject["code"],
                "name": subject["name"],
            }
            for subject in (subjects_by_id.get(o["subject_id"]) for o in offerings)
            if subject
        ]
        return {"subjects": subjects}

    # No curated offerings; derive subjects from uploaded resources.
    resources = db.select(
        query("resources")
        .eq("year", year_value)
        .eq("branch", branch)
        .eq("semester", semester_value)
        .is_null("deleted_at")
    )
    codes = sorted({r["subject"] for r in resources if r.get("subject")})
    return {
        "subjects": [
            {"code": code, "name": code.upper().replace("_", " ")} for code in codes
        ]
    }


@router.post("/mapping", response_model=MappingResponse)
def map_profile_data(
    payload: MappingRequest,
    db: DbClient = Depends(get_db_client),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
):
    """
    Resolve (branch code, year, semester number) to row ids.

    ``yearNumber`` 1-4 is an academic year; larger values are batch years.
    """
    branch_code = (payload.branchCode or "").strip()
    if not branch_code:
        raise BadRequest("Branch code is required and must be a string")
    if payload.yearNumber is None or payload.yearNumber < 1:
        raise BadRequest("Year number is required and must be a number")

    if payload.yearNumber <= 4:
        try:
            batch_year = academic_config.academic_year_to_batch_year(payload.yearNumber)
        except ValueError:
            batch_year = batch_year_for_level(payload.yearNumber)
    else:
        batch_year = payload.yearNumber

    branch = db.select_one(query("branches").eq("code", branch_code))
    if not branch:
        raise BadRequest(f"Invalid branch code: {branch_code}")
    year = db.select_one(query("years").eq("batch_year", batch_year))
    if not year:
        raise BadRequest(f"Invalid year: {batch_year}")
    sem_id = semester_id(db, year["id"], payload.semesterNumber)
    if not sem_id:
        raise BadRequest(
            f"Invalid semester: {payload.semesterNumber} for year {batch_year}"
        )
    return MappingResponse(branch_id=branch["id"], year_id=year["id"], semester_id=sem_id)


def _calendar_with_relations(db: DbClient, calendar: Optional[dict]) -> Optional[dict]:
    if not calendar:
        return None
    year = db.get("years", calendar["current_year_id"]) if calendar.get("current_year_id") else None
    semester = (
        db.get("semesters", calendar["current_semester_id"])
        if calendar.get("current_semester_id")
        else None
    )
    return {**calendar, "current_year": year, "current_semester": semester}


@router.get("/academic-calendar")
def get_academic_calendar(db: DbClient = Depends(get_db_client)):
    calendar = db.select_one(query("academic_calendar"))
    return {"calendar": _calendar_with_relations(db, calendar)}


@router.post("/academic-calendar")
def set_academic_calendar(
    payload: CalendarUpdate,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    caches: AcademicCaches = Depends(get_caches),
    settings: Settings = Depends(get_settings),
):
    admin = require_admin(db, email, settings)
    if not payload.current_year_id or not payload.current_semester_id:
        raise BadRequest("Current year and semester are required")
    semester = db.get("semesters", payload.current_semester_id)
    if not semester or semester["year_id"] != payload.current_year_id:
        raise BadRequest("Semester does not belong to the specified year")

    calendar = db.upsert(
        "academic_calendar",
        {
            "id": 1,
            "current_year_id": payload.current_year_id,
            "current_semester_id": payload.current_semester_id,
            "last_updated": utc_now_iso(),
            "updated_by": admin.email,
        },
        on_conflict=["id"],
    )
    caches.invalidate_semester_change()
    log_audit(
        db,
        actor_email=admin.email,
        actor_role=admin.role,
        action="update",
        entity="academic_calendar",
        entity_id=str(calendar["id"]),
        after_data=calendar,
    )
    return {"calendar": _calendar_with_relations(db, calendar)}


@router.put("/academic-calendar")
def progress_academic_calendar(
    payload: CalendarAction,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    caches: AcademicCaches = Depends(get_caches),
    settings: Settings = Depends(get_settings),
):
    """
    Move the calendar forward one semester: 1 -> 2 within a year, 2 -> 1 of
    the next batch year.
    """
    admin = require_admin(db, email, settings, AdminRole.SUPERADMIN)
    if payload.action != "progress_semester":
        raise BadRequest('Invalid action. Use "progress_semester"')

    calendar = _calendar_with_relations(db, db.select_one(query("academic_calendar")))
    if not calendar or not calendar["current_year"] or not calendar["current_semester"]:
        raise NotFound("Academic calendar not found")

    new_year_id = calendar["current_year_id"]
    new_semester_id = calendar["current_semester_id"]
    if calendar["current_semester"]["semester_number"] == 1:
        new_semester_id = semester_id(db, new_year_id, 2) or new_semester_id
    else:
        next_year = db.select_one(
            query("years").eq("batch_year", calendar["current_year"]["batch_year"] + 1)
        )
        if not next_year:
            raise BadRequest("Next academic year not found. Please create it first.")
        new_year_id = next_year["id"]
        new_semester_id = semester_id(db, new_year_id, 1) or new_semester_id

    updated = db.update(
        query("academic_calendar").eq("id", calendar["id"]),
        {
            "current_year_id": new_year_id,
            "current_semester_id": new_semester_id,
            "last_updated": utc_now_iso(),
            "updated_by": admin.email,
        },
    )[0]
    caches.invalidate_semester_change()
    log_audit(
        db,
        actor_email=admin.email,
        actor_role=admin.role,
        action="progress_semester",
        entity="academic_calendar",
        entity_id=str(updated["id"]),
        before_data={
            "current_year_id": calendar["current_year_id"],
            "current_semester_id": calendar["current_semester_id"],
        },
        after_data=updated,
    )
    return {
        "calendar": _calendar_with_relations(db, updated),
        "message": "Semester progressed successfully",
    }


@router.get("/hero")
def hero_texts(db: DbClient = Depends(get_db_client)):
    now = utc_now_iso()
    try:
        rows = db.select(query("hero_texts").order("priority"))
    except DbError:
        logger.exception("Hero texts query failed")
        return DEFAULT_HERO_TEXTS
    texts = [
        row["text"]
        for row in rows
        if row.get("time_limit") is None or row["time_limit"] > now
    ]
    return texts or DEFAULT_HERO_TEXTS


@router.get("/users-count", response_model=UsersCountResponse)
def users_count(db: DbClient = Depends(get_db_client)):
    profiles = db.count(query("profiles"))
    admins = db.count(query("admins"))
    return UsersCountResponse(
        totalUsers=profiles + admins,
        breakdown={"profiles": profiles, "admins": admins},
        lastUpdated=utc_now_iso(),
    )
