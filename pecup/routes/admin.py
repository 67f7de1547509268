"""
Administration endpoints: admin accounts, portal settings, year mappings,
representative assignments, semester promotion and cache control.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import unquote

from fastapi import APIRouter, Body, Depends, Query

from pecup.academic_config import AcademicConfigManager, InvalidYearMappings
from pecup.audit import log_audit
from pecup.auth import get_session_email
from pecup.cache import AcademicCaches
from pecup.config import Settings, get_settings
from pecup.db import DbClient, query
from pecup.dependencies import get_academic_config, get_caches, get_db_client
from pecup.errors import (
    BadRequest,
    Conflict,
    DbError,
    Forbidden,
    InternalError,
    NotFound,
    Unauthorized,
    UniqueViolation,
)
from pecup.lookups import branch_id_by_code, year_id_by_batch_year
from pecup.permissions import UserContext, can_promote_semester, require_admin
from pecup.routes.common import EMAIL_PATTERN, clean_str, get_user_context, parse_page, parse_sort, require_session
from pecup.schemas import (
    AdminCreate,
    AdminUpdate,
    RepresentativeAssign,
    SemesterPromotionRequest,
    YearMappingsUpdate,
)
from pecup.types import AdminRole, UserRole

logger = logging.getLogger(__name__)

router = APIRouter()

ADMIN_ROLES = (AdminRole.ADMIN.value, AdminRole.SUPERADMIN.value)
SETTINGS_KEYS = ("drive_folder_id", "storage_bucket", "pdf_to_drive", "non_pdf_to_storage")
SETTINGS_ROW_ID = 1


def _admin_view(row: dict) -> dict:
    return {key: row.get(key) for key in ("id", "email", "role", "created_at")}


@router.get("/admin/admins")
def list_admins(
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    sort: Optional[str] = Query(None),
    order: Optional[str] = Query(None),
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    require_admin(db, email, settings, min_role=AdminRole.SUPERADMIN)
    paging = parse_page(page, limit)
    sort_column, sort_order = parse_sort(sort, order, ("created_at", "email", "role"), "created_at")
    count = db.count(query("admins"))
    rows = db.select(
        query("admins")
        .order(sort_column, desc=sort_order == "desc")
        .limit(paging.limit)
        .offset(paging.offset)
    )
    return {
        "data": [_admin_view(row) for row in rows],
        "meta": paging.meta(count, sort_column, sort_order),
    }


@router.post("/admin/admins")
def add_admin(
    payload: AdminCreate,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    actor = require_admin(db, email, settings, min_role=AdminRole.SUPERADMIN)
    new_email = clean_str(payload.email).lower()
    role = clean_str(payload.role) or AdminRole.ADMIN.value
    if not new_email or not EMAIL_PATTERN.match(new_email):
        raise BadRequest("Invalid email")
    if role not in ADMIN_ROLES:
        raise BadRequest("Invalid role")

    try:
        row = db.insert("admins", {"email": new_email, "role": role})
    except UniqueViolation as exc:
        log_audit(
            db,
            actor_email=actor.email,
            actor_role=actor.role,
            action="create",
            entity="admin",
            success=False,
            message="Admin already exists",
        )
        raise Conflict("Admin already exists") from exc
    except DbError as exc:
        log_audit(
            db,
            actor_email=actor.email,
            actor_role=actor.role,
            action="create",
            entity="admin",
            success=False,
            message=str(exc),
        )
        raise InternalError("Failed to add admin") from exc

    admin = _admin_view(row)
    log_audit(
        db,
        actor_email=actor.email,
        actor_role=actor.role,
        action="create",
        entity="admin",
        entity_id=row["id"],
        after_data=admin,
    )
    return admin


@router.patch("/admin/admins/{admin_email}")
def update_admin(
    admin_email: str,
    payload: AdminUpdate,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    actor = require_admin(db, email, settings, min_role=AdminRole.SUPERADMIN)
    target = unquote(admin_email).lower()
    role = clean_str(payload.role)
    if role not in ADMIN_ROLES:
        raise BadRequest("Invalid role")

    existing = db.select_one(query("admins").eq("email", target))
    if not existing:
        raise NotFound("Admin not found")
    updated = db.update(query("admins").eq("email", target), {"role": role})
    if not updated:
        raise NotFound("Admin not found")

    after = _admin_view(updated[0])
    log_audit(
        db,
        actor_email=actor.email,
        actor_role=actor.role,
        action="update",
        entity="admin",
        entity_id=after["id"],
        before_data=_admin_view(existing),
        after_data=after,
    )
    return after


@router.delete("/admin/admins/{admin_email}")
def remove_admin(
    admin_email: str,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    actor = require_admin(db, email, settings, min_role=AdminRole.SUPERADMIN)
    target = unquote(admin_email).lower()
    before = db.select_one(query("admins").eq("email", target))
    if not before:
        log_audit(
            db,
            actor_email=actor.email,
            actor_role=actor.role,
            action="delete",
            entity="admin",
            success=False,
            message="Admin not found",
        )
        raise NotFound("Admin not found")

    db.delete(query("admins").eq("email", target))
    log_audit(
        db,
        actor_email=actor.email,
        actor_role=actor.role,
        action="delete",
        entity="admin",
        entity_id=before["id"],
        before_data=_admin_view(before),
    )
    return {"success": True}


def _settings_row(db: DbClient) -> dict:
    row = db.get("settings", SETTINGS_ROW_ID)
    if row is None:
        row = db.upsert("settings", {"id": SETTINGS_ROW_ID}, on_conflict=["id"])
    return row


@router.get("/admin/settings")
def read_settings(
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    actor = require_admin(db, email, settings, min_role=AdminRole.SUPERADMIN)
    row = _settings_row(db)
    log_audit(db, actor_email=actor.email, actor_role=actor.role, action="read", entity="settings")
    return row


@router.put("/admin/settings")
def update_settings(
    body: dict = Body(default_factory=dict),
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    actor = require_admin(db, email, settings, min_role=AdminRole.SUPERADMIN)
    update = {key: body[key] for key in SETTINGS_KEYS if key in body}
    before = _settings_row(db)
    try:
        after = db.upsert("settings", {"id": SETTINGS_ROW_ID, **update}, on_conflict=["id"])
    except DbError as exc:
        log_audit(
            db,
            actor_email=actor.email,
            actor_role=actor.role,
            action="settings_update",
            entity="settings",
            success=False,
            message=str(exc),
        )
        raise InternalError("Failed to update settings") from exc

    log_audit(
        db,
        actor_email=actor.email,
        actor_role=actor.role,
        action="settings_update",
        entity="settings",
        before_data=before,
        after_data=after,
    )
    return after


@router.post("/admin/bootstrap-superadmin")
def bootstrap_superadmin(
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
    email: Optional[str] = Depends(get_session_email),
):
    """
    Make the caller the first superadmin. Development only, and only while
    the admins table is empty.
    """
    if not settings.is_development:
        raise Forbidden()
    if not email:
        raise Unauthorized()
    if db.count(query("admins")) > 0:
        return {"ok": True, "message": "Admins table not empty; no changes"}
    row = db.insert("admins", {"email": email, "role": AdminRole.SUPERADMIN.value})
    logger.warning("Bootstrapped %s as superadmin", email)
    return {"ok": True, "bootstrapped": {"email": row["email"], "role": row["role"]}}


def _mapping_changes(old: dict, new: dict) -> list[dict]:
    return [
        {
            "batch_year": batch_year,
            "old_academic_year": old[batch_year],
            "new_academic_year": new.get(batch_year),
        }
        for batch_year in old
    ]


@router.get("/admin/year-mappings")
def read_year_mappings(
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
    settings: Settings = Depends(get_settings),
):
    require_admin(db, email, settings)
    distribution = academic_config.student_distribution()
    return {
        "current_mappings": academic_config.get_year_mappings(),
        "student_distribution": distribution,
        "total_students": sum(distribution.values()),
    }


@router.post("/admin/year-mappings")
def promote_all(
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
    caches: AcademicCaches = Depends(get_caches),
    settings: Settings = Depends(get_settings),
):
    actor = require_admin(db, email, settings)
    old = academic_config.get_year_mappings()
    try:
        new = academic_config.promote_all_students()
    except DbError as exc:
        log_audit(
            db,
            actor_email=actor.email,
            actor_role=actor.role,
            action="promote_all",
            entity="year_mappings",
            success=False,
            message=str(exc),
        )
        raise InternalError("Failed to promote students") from exc
    caches.invalidate_semester_change()
    log_audit(
        db,
        actor_email=actor.email,
        actor_role=actor.role,
        action="promote_all",
        entity="year_mappings",
        before_data={str(k): v for k, v in old.items()},
        after_data={str(k): v for k, v in new.items()},
    )
    return {
        "success": True,
        "message": "All students promoted successfully",
        "old_mappings": old,
        "new_mappings": new,
        "changes": _mapping_changes(old, new),
    }


@router.patch("/admin/year-mappings")
def demote_all(
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
    caches: AcademicCaches = Depends(get_caches),
    settings: Settings = Depends(get_settings),
):
    actor = require_admin(db, email, settings)
    old = academic_config.get_year_mappings()
    try:
        new = academic_config.demote_all_students()
    except DbError as exc:
        log_audit(
            db,
            actor_email=actor.email,
            actor_role=actor.role,
            action="demote_all",
            entity="year_mappings",
            success=False,
            message=str(exc),
        )
        raise InternalError("Failed to demote students") from exc
    caches.invalidate_semester_change()
    log_audit(
        db,
        actor_email=actor.email,
        actor_role=actor.role,
        action="demote_all",
        entity="year_mappings",
        before_data={str(k): v for k, v in old.items()},
        after_data={str(k): v for k, v in new.items()},
    )
    return {
        "success": True,
        "message": "All students demoted successfully",
        "old_mappings": old,
        "new_mappings": new,
        "changes": _mapping_changes(old, new),
    }


@router.put("/admin/year-mappings")
def set_year_mappings(
    payload: YearMappingsUpdate,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
    caches: AcademicCaches = Depends(get_caches),
    settings: Settings = Depends(get_settings),
):
    actor = require_admin(db, email, settings, min_role=AdminRole.SUPERADMIN)
    if not isinstance(payload.mappings, dict):
        raise BadRequest("Invalid mappings format")
    try:
        new = academic_config.update_year_mappings(payload.mappings, require_all_levels=True)
    except InvalidYearMappings as exc:
        raise BadRequest(str(exc)) from exc
    except DbError as exc:
        log_audit(
            db,
            actor_email=actor.email,
            actor_role=actor.role,
            action="update",
            entity="year_mappings",
            success=False,
            message=str(exc),
        )
        raise InternalError("Failed to update year mappings") from exc
    caches.invalidate_semester_change()
    log_audit(
        db,
        actor_email=actor.email,
        actor_role=actor.role,
        action="update",
        entity="year_mappings",
        after_data={str(k): v for k, v in new.items()},
    )
    return {
        "success": True,
        "message": "Year mappings updated successfully",
        "new_mappings": new,
    }


@router.delete("/admin/cache")
def clear_caches(
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    caches: AcademicCaches = Depends(get_caches),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
    settings: Settings = Depends(get_settings),
):
    actor = require_admin(db, email, settings)
    caches.clear_all()
    academic_config.clear_cache()
    log_audit(db, actor_email=actor.email, actor_role=actor.role, action="clear", entity="cache")
    return {"success": True}


def _assign_representative(db: DbClient, actor_id, user: dict, target: str, assignments) -> list[dict]:
    db.update(query("profiles").eq("id", user["id"]), {"role": UserRole.REPRESENTATIVE.value})

    created = []
    for assignment in assignments:
        branch_id = branch_id_by_code(db, assignment.branchCode)
        year_id = year_id_by_batch_year(db, assignment.batchYear)
        if not branch_id or not year_id:
            logger.warning(
                "Skipping representative assignment %s/%s for %s: unknown branch or year",
                assignment.branchCode,
                assignment.batchYear,
                target,
            )
            continue
        row = db.upsert(
            "representatives",
            {
                "user_id": user["id"],
                "branch_id": branch_id,
                "year_id": year_id,
                "assigned_by": actor_id,
                "active": True,
            },
            on_conflict=["user_id", "branch_id", "year_id"],
        )
        created.append(
            {**row, "branch_code": assignment.branchCode, "batch_year": assignment.batchYear}
        )

    return created


@router.post("/admin/representatives")
def assign_representative(
    payload: RepresentativeAssign,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    caches: AcademicCaches = Depends(get_caches),
    settings: Settings = Depends(get_settings),
):
    """
    Promote a user to representative and upsert their branch/year assignments.
    Unknown branch codes or batch years are skipped.
    """
    actor = require_admin(db, email, settings)
    target = payload.email.strip().lower()
    user = db.select_one(query("profiles").eq("email", target))
    if not user:
        raise NotFound(f"User not found: {target}")

    try:
        created = _assign_representative(db, actor.id, user, target, payload.assignments)
    except DbError as exc:
        log_audit(
            db,
            actor_email=actor.email,
            actor_role=actor.role,
            action="assign_representative",
            entity="representative",
            entity_id=user["id"],
            success=False,
            message=str(exc),
        )
        raise InternalError("Failed to assign representative") from exc

    caches.invalidate_profile(target)
    log_audit(
        db,
        actor_email=actor.email,
        actor_role=actor.role,
        action="assign_representative",
        entity="representative",
        entity_id=user["id"],
        after_data={"assignments": created},
    )
    return {"success": True, "assignments": created}


@router.delete("/admin/representatives/{user_email}")
def remove_representative(
    user_email: str,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    caches: AcademicCaches = Depends(get_caches),
    settings: Settings = Depends(get_settings),
):
    actor = require_admin(db, email, settings)
    target = unquote(user_email).lower()
    user = db.select_one(query("profiles").eq("email", target))
    if not user:
        raise NotFound(f"User not found: {target}")

    try:
        deactivated = db.update(query("representatives").eq("user_id", user["id"]), {"active": False})
        db.update(query("profiles").eq("id", user["id"]), {"role": UserRole.STUDENT.value})
    except DbError as exc:
        log_audit(
            db,
            actor_email=actor.email,
            actor_role=actor.role,
            action="remove_representative",
            entity="representative",
            entity_id=user["id"],
            success=False,
            message=str(exc),
        )
        raise InternalError("Failed to remove representative") from exc

    caches.invalidate_profile(target)
    log_audit(
        db,
        actor_email=actor.email,
        actor_role=actor.role,
        action="remove_representative",
        entity="representative",
        entity_id=user["id"],
        before_data={"assignments": deactivated},
    )
    return {"success": True}


@router.post("/semester-promotion")
def promote_semester(
    payload: SemesterPromotionRequest,
    email: str = Depends(require_session),
    ctx: Optional[UserContext] = Depends(get_user_context),
    db: DbClient = Depends(get_db_client),
    caches: AcademicCaches = Depends(get_caches),
):
    """
    Move every student of a branch/year from one semester to the next.

    Valid moves are 1 -> 2 within a year and 2 -> 1 into another year.
    """
    if ctx is None:
        raise Unauthorized()
    if not all([payload.branchId, payload.yearId, payload.fromSemesterId, payload.toSemesterId]):
        raise BadRequest("Missing required fields: branchId, yearId, fromSemesterId, toSemesterId")
    if not can_promote_semester(ctx, payload.branchId, payload.yearId):
        raise Forbidden("Forbidden: Cannot promote semester for this branch/year")

    from_semester = db.get("semesters", payload.fromSemesterId)
    to_semester = db.get("semesters", payload.toSemesterId)
    if not from_semester or not to_semester:
        raise BadRequest("Invalid semester IDs")
    same_year = from_semester["year_id"] == to_semester["year_id"]
    numbers = (from_semester["semester_number"], to_semester["semester_number"])
    if not ((numbers == (1, 2) and same_year) or (numbers == (2, 1) and not same_year)):
        raise BadRequest(
            "Invalid semester promotion: must be sequential (1->2 same year, or 2->1 next year)"
        )

    def students():
        return (
            query("profiles")
            .eq("branch_id", payload.branchId)
            .eq("year_id", payload.yearId)
            .eq("semester_id", payload.fromSemesterId)
        )

    to_promote = db.select(students())
    if not to_promote:
        raise NotFound("No students found for promotion in the specified criteria")

    changes = {"semester_id": payload.toSemesterId}
    if not same_year:
        changes["year_id"] = to_semester["year_id"]
    try:
        db.update(students(), changes)
    except DbError as exc:
        log_audit(
            db,
            actor_email=email,
            actor_role=ctx.role,
            action="promote_semester",
            entity="semester_promotions",
            success=False,
            message=str(exc),
        )
        raise InternalError("Failed to promote students") from exc

    promotion = None
    try:
        promotion = db.insert(
            "semester_promotions",
            {
                "promoted_by": ctx.id,
                "from_semester_id": payload.fromSemesterId,
                "to_semester_id": payload.toSemesterId,
                "branch_id": payload.branchId,
                "year_id": payload.yearId,
                "notes": payload.notes,
            },
        )
    except DbError:
        logger.exception("Failed to record semester promotion")

    caches.invalidate_semester_change()
    log_audit(
        db,
        actor_email=email,
        actor_role=ctx.role,
        action="promote_semester",
        entity="semester_promotions",
        entity_id=promotion["id"] if promotion else "unknown",
        message=(
            f"Promoted {len(to_promote)} students from semester {numbers[0]} to {numbers[1]}"
        ),
        after_data={
            "branchId": payload.branchId,
            "yearId": payload.yearId,
            "fromSemesterId": payload.fromSemesterId,
            "toSemesterId": payload.toSemesterId,
            "studentsCount": len(to_promote),
            "notes": payload.notes,
        },
    )
    return {"success": True, "promotedCount": len(to_promote), "promotion": promotion}


@router.get("/semester-promotion")
def promotion_history(
    branchId: Optional[str] = Query(None),
    yearId: Optional[str] = Query(None),
    ctx: Optional[UserContext] = Depends(get_user_context),
    db: DbClient = Depends(get_db_client),
):
    if ctx is None:
        raise Unauthorized()
    if not (ctx.is_admin or ctx.is_representative):
        raise Forbidden()

    q = query("semester_promotions").order("promotion_date", desc=True)
    if ctx.is_representative:
        q.in_("branch_id", sorted({a.branch_id for a in ctx.representative_assignments}))
        q.in_("year_id", sorted({a.year_id for a in ctx.representative_assignments}))
    if branchId:
        q.eq("branch_id", branchId)
    if yearId:
        q.eq("year_id", yearId)

    promotions = []
    for row in db.select(q):
        promoter = db.get("profiles", row["promoted_by"]) if row.get("promoted_by") else None
        promotions.append(
            {
                **row,
                "profiles": {key: promoter.get(key) for key in ("id", "email", "name", "role")}
                if promoter
                else None,
                "from_semester": db.get("semesters", row["from_semester_id"]),
                "to_semester": db.get("semesters", row["to_semester_id"]),
                "branches": db.get("branches", row["branch_id"]),
                "years": db.get("years", row["year_id"]),
            }
        )
    return {"promotions": promotions}
