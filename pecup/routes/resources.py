"""
Resource management for admins and representatives.

Admins manage every resource; representatives are limited to the branches
and years they are assigned to. Uploaded files go to object storage and
the public URL is recorded on the row.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from pecup.academic_config import AcademicConfigManager
from pecup.audit import log_audit
from pecup.auth import get_session_email
from pecup.config import Settings, get_settings
from pecup.db import DbClient, query
from pecup.dependencies import get_academic_config, get_db_client, get_storage_client
from pecup.errors import BadRequest, DbError, Forbidden, InternalError, NotFound, Unauthorized
from pecup.files import (
    delete_stored_file,
    is_drive_url,
    release_resource_file,
    store_upload,
    try_parse_storage_path_from_url,
)
from pecup.lookups import branch_id_by_code, semester_id
from pecup.permissions import UserContext, can_manage_resources, require_admin, require_permission
from pecup.routes.common import (
    clean_str,
    get_user_context,
    optional_str,
    parse_page,
    parse_sort,
    read_body,
    resolve_year_id,
    to_bool,
    to_int,
)
from pecup.storage import StorageClient, StorageError
from pecup.tables import utc_now_iso

logger = logging.getLogger(__name__)

router = APIRouter()

ADMIN_RESOURCE_REQUIRED = ("category", "subject", "unit", "name")
ADMIN_UPDATE_FIELDS = (
    "category",
    "subject",
    "unit",
    "name",
    "description",
    "type",
    "year",
    "branch",
    "archived",
)
REPRESENTATIVE_UPDATE_FIELDS = (
    "title",
    "description",
    "category",
    "subject",
    "unit",
    "archived",
)


def _sanitize_update(body: dict, allowed: tuple[str, ...]) -> dict:
    values = {}
    for name in allowed:
        if name not in body:
            continue
        raw = body[name]
        if name == "subject":
            values[name] = clean_str(raw).lower()
        elif name in ("unit", "year"):
            values[name] = to_int(raw)
        elif name == "archived":
            values[name] = bool(to_bool(raw))
        else:
            values[name] = raw
    return values


def _created_by(db: DbClient, email: str) -> Optional[str]:
    admin = db.select_one(query("admins").eq("email", email))
    return admin["id"] if admin else None


def _audit_failure(db: DbClient, ctx_email: str, role: str, action: str, exc: Exception, entity_id=None):
    log_audit(
        db,
        actor_email=ctx_email,
        actor_role=role,
        action=action,
        entity="resource",
        entity_id=entity_id,
        success=False,
        message=str(exc),
    )


@router.get("/admin/resources")
def admin_list_resources(
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    sort: Optional[str] = Query(None),
    order: Optional[str] = Query(None),
    subject: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    unit: Optional[str] = Query(None),
    year: Optional[str] = Query(None),
    semester: Optional[str] = Query(None),
    branch: Optional[str] = Query(None),
    archived: Optional[str] = Query(None),
    ctx: Optional[UserContext] = Depends(get_user_context),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    if ctx is None:
        raise Unauthorized()
    if not (ctx.is_admin or ctx.is_representative):
        raise Forbidden()

    paging = parse_page(page, limit, max_limit=1000 if settings.is_development else 200)
    sort_column, sort_order = parse_sort(sort, order, ("date", "name", "created_at"), "date")

    def build():
        q = query("resources").is_null("deleted_at")
        if subject:
            q.contains("subject", subject)
        if category:
            q.eq("category", category)
        for column, raw in (("unit", unit), ("year", year), ("semester", semester)):
            value = to_int(raw)
            if value is not None:
                q.eq(column, value)
        if branch:
            q.eq("branch", branch)
        if archived in ("true", "false"):
            q.eq("archived", archived == "true")
        if ctx.is_representative:
            branch_ids = sorted({a.branch_id for a in ctx.representative_assignments})
            year_ids = sorted({a.year_id for a in ctx.representative_assignments})
            q.in_("branch_id", branch_ids).in_("year_id", year_ids)
        return q

    try:
        count = db.count(build())
        rows = db.select(
            build()
            .order(sort_column, desc=sort_order == "desc")
            .limit(paging.limit)
            .offset(paging.offset)
        )
    except DbError:
        logger.exception("Admin resources list failed")
        return {
            "data": [],
            "meta": paging.meta(0, sort_column, sort_order),
            "warning": "Failed to list resources",
        }
    return {"data": rows, "meta": paging.meta(count, sort_column, sort_order)}


@router.post("/admin/resources")
async def admin_create_resource(
    request: Request,
    ctx: Optional[UserContext] = Depends(get_user_context),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    academic_config: AcademicConfigManager = Depends(get_academic_config),
    settings: Settings = Depends(get_settings),
):
    """
    Create a resource from a JSON body with ``url`` or a multipart upload.
    """
    ctx = require_permission(ctx, "write", "resources")
    body, upload = await read_body(request)
    for name in ADMIN_RESOURCE_REQUIRED:
        if not body.get(name):
            raise BadRequest(f"Missing field {name}")
    unit = to_int(body.get("unit"))
    if not unit or unit < 1:
        raise BadRequest("Invalid unit")

    branch_id = optional_str(body.get("branch_id"))
    year_id = optional_str(body.get("year_id"))
    semester_ref = optional_str(body.get("semester_id"))

    # Scope is checked before anything is uploaded.
    if ctx.is_representative:
        if (not branch_id or not year_id) and ctx.representative_assignments:
            first = ctx.representative_assignments[0]
            branch_id = branch_id or first.branch_id
            year_id = year_id or first.year_id
        if not branch_id or not year_id:
            raise BadRequest("Branch and year must be specified for representatives")
        if not can_manage_resources(ctx, branch_id, year_id):
            raise Forbidden("Forbidden: Cannot manage resources for this branch/year")

    file_type = None
    try:
        if upload is not None:
            stored = store_upload(storage, settings, upload.data, upload.filename, upload.content_type)
            url, is_pdf, file_type = stored.url, stored.is_pdf, stored.mime_type
        elif body.get("url"):
            url = clean_str(body["url"])
            is_pdf = is_drive_url(url.lower()) or url.lower().endswith(".pdf")
        else:
            raise BadRequest("Either file or url is required")
    except StorageError as exc:
        _audit_failure(db, ctx.email, ctx.role, "create", exc)
        raise InternalError("Failed to create resource") from exc

    year_value = to_int(body.get("year")) if body.get("year") else None
    semester_value = to_int(body.get("semester")) if body.get("semester") else None
    if not branch_id and body.get("branch"):
        branch_id = branch_id_by_code(db, clean_str(body["branch"]))
    if not year_id and year_value:
        year_id = resolve_year_id(db, academic_config, year_value)
    if not semester_ref and year_id and semester_value:
        semester_ref = semester_id(db, year_id, semester_value)

    profile = db.select_one(query("profiles").eq("email", ctx.email))
    name = clean_str(body["name"])
    values = {
        "category": clean_str(body["category"]),
        "subject": clean_str(body["subject"]).lower(),
        "unit": unit,
        "name": name,
        "title": optional_str(body.get("title")) or name,
        "description": optional_str(body.get("description")),
        "type": optional_str(body.get("type")),
        "date": optional_str(body.get("date")) or utc_now_iso(),
        "year": year_value,
        "branch": optional_str(body.get("branch")),
        "semester": semester_value,
        "archived": bool(to_bool(body.get("archived"))),
        "url": url,
        "is_pdf": is_pdf,
        "file_type": file_type,
        "drive_link": url if is_drive_url(url.lower()) else None,
        "branch_id": branch_id,
        "year_id": year_id,
        "semester_id": semester_ref,
        "uploader_id": profile["id"] if profile else None,
        "created_by": _created_by(db, ctx.email),
    }
    try:
        row = db.insert("resources", values)
    except DbError as exc:
        _audit_failure(db, ctx.email, ctx.role, "create", exc)
        raise InternalError("Failed to create resource") from exc

    log_audit(
        db,
        actor_email=ctx.email,
        actor_role=ctx.role,
        action="create",
        entity="resource",
        entity_id=row["id"],
        after_data=values,
    )
    return {"id": row["id"], **values}


@router.patch("/admin/resources/{resource_id}")
async def admin_update_resource(
    resource_id: str,
    request: Request,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
):
    admin = require_admin(db, email, settings)
    before = db.get("resources", resource_id)
    if not before:
        raise NotFound("Not found")

    body, upload = await read_body(request)
    values = _sanitize_update(body, ADMIN_UPDATE_FIELDS)
    try:
        if upload is not None:
            # The new file is stored before the old one is released.
            stored = store_upload(storage, settings, upload.data, upload.filename, upload.content_type)
            values.update(
                url=stored.url,
                is_pdf=stored.is_pdf,
                file_type=stored.mime_type,
                drive_link=None,
            )
            if before.get("url") and not delete_stored_file(storage, before["url"]):
                logger.warning("Previous file for resource %s was not removed", resource_id)
        after = db.update(query("resources").eq("id", resource_id), values)[0] if values else before
    except (DbError, StorageError) as exc:
        _audit_failure(db, admin.email, admin.role, "update", exc, entity_id=resource_id)
        raise InternalError("Failed to update resource") from exc

    log_audit(
        db,
        actor_email=admin.email,
        actor_role=admin.role,
        action="update",
        entity="resource",
        entity_id=resource_id,
        before_data=before,
        after_data=after,
    )
    return after


@router.delete("/admin/resources/{resource_id}")
def admin_delete_resource(
    resource_id: str,
    email: Optional[str] = Depends(get_session_email),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
):
    """
    Delete the stored file and the row; keep a soft-deleted row when the
    file could not be removed.
    """
    admin = require_admin(db, email, settings)
    row = db.get("resources", resource_id)
    if not row:
        raise NotFound("Not found")

    try:
        if release_resource_file(storage, row.get("url")):
            db.delete(query("resources").eq("id", resource_id))
            log_audit(
                db,
                actor_email=admin.email,
                actor_role=admin.role,
                action="delete",
                entity="resource",
                entity_id=resource_id,
                before_data=row,
            )
            return {"success": True}

        db.update(query("resources").eq("id", resource_id), {"deleted_at": utc_now_iso()})
    except DbError as exc:
        _audit_failure(db, admin.email, admin.role, "delete", exc, entity_id=resource_id)
        raise InternalError("Failed to delete resource") from exc

    log_audit(
        db,
        actor_email=admin.email,
        actor_role=admin.role,
        action="soft_delete",
        entity="resource",
        entity_id=resource_id,
        success=False,
        message="Blob deletion failed; soft-deleted row",
    )
    return {"success": True, "softDeleted": True}


def _require_representative(ctx: Optional[UserContext]) -> UserContext:
    if ctx is None:
        raise Unauthorized()
    if not ctx.is_representative:
        raise Forbidden("Forbidden: Representatives only")
    return ctx


def _with_relations(db: DbClient, resource: dict) -> dict:
    return {
        **resource,
        "branches": db.get("branches", resource["branch_id"]) if resource.get("branch_id") else None,
        "years": db.get("years", resource["year_id"]) if resource.get("year_id") else None,
        "semesters": db.get("semesters", resource["semester_id"])
        if resource.get("semester_id")
        else None,
    }


def _managed_resource(db: DbClient, ctx: UserContext, resource_id: str) -> dict:
    resource = db.get("resources", resource_id)
    if not resource or resource.get("deleted_at"):
        raise NotFound("Resource not found")
    if not can_manage_resources(ctx, resource.get("branch_id"), resource.get("year_id")):
        raise Forbidden("Forbidden: Cannot manage resources for this branch/year")
    return resource


@router.get("/representative/resources")
def representative_list_resources(
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    branchId: Optional[str] = Query(None),
    yearId: Optional[str] = Query(None),
    semesterId: Optional[str] = Query(None),
    archived: Optional[str] = Query(None),
    ctx: Optional[UserContext] = Depends(get_user_context),
    db: DbClient = Depends(get_db_client),
):
    ctx = _require_representative(ctx)
    paging = parse_page(page, limit)
    branch_ids = sorted({a.branch_id for a in ctx.representative_assignments})
    year_ids = sorted({a.year_id for a in ctx.representative_assignments})
    if not branch_ids:
        return {"resources": [], "total": 0, "page": paging.page, "limit": paging.limit, "totalPages": 1}

    def build():
        q = query("resources").is_null("deleted_at").in_("branch_id", branch_ids).in_("year_id", year_ids)
        if branchId and branchId in branch_ids:
            q.eq("branch_id", branchId)
        if yearId and yearId in year_ids:
            q.eq("year_id", yearId)
        if semesterId:
            q.eq("semester_id", semesterId)
        if archived in ("true", "false"):
            q.eq("archived", archived == "true")
        return q

    total = db.count(build())
    rows = db.select(
        build().order("created_at", desc=True).limit(paging.limit).offset(paging.offset)
    )
    meta = paging.meta(total)
    return {
        "resources": [_with_relations(db, row) for row in rows],
        "total": total,
        "page": paging.page,
        "limit": paging.limit,
        "totalPages": meta["totalPages"],
    }


@router.post("/representative/resources")
async def representative_create_resource(
    request: Request,
    ctx: Optional[UserContext] = Depends(get_user_context),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
):
    ctx = require_permission(ctx, "write", "resources")
    if not ctx.is_representative:
        raise Forbidden("Forbidden: Representatives only")

    body, upload = await read_body(request)
    branch_id = optional_str(body.get("branch_id") or body.get("branchId") or body.get("branch"))
    year_id = optional_str(body.get("year_id") or body.get("yearId") or body.get("year"))
    semester_ref = optional_str(
        body.get("semester_id") or body.get("semesterId") or body.get("semester")
    )
    title = optional_str(body.get("title") or body.get("name"))
    if not title:
        raise BadRequest("Missing field title")
    if not branch_id or not year_id or not semester_ref:
        raise BadRequest("Missing field branch/year/semester IDs")
    if not can_manage_resources(ctx, branch_id, year_id):
        raise Forbidden("Forbidden: Cannot manage resources for this branch/year")

    if upload is not None:
        try:
            stored = store_upload(storage, settings, upload.data, upload.filename, upload.content_type)
        except StorageError as exc:
            raise InternalError("Failed to create resource") from exc
        url, file_type = stored.url, stored.mime_type
    elif body.get("url"):
        url = clean_str(body["url"])
        file_type = "application/pdf" if is_drive_url(url.lower()) else None
    else:
        raise BadRequest("Either file or url is required")

    values = {
        "title": title,
        "name": title,
        "description": optional_str(body.get("description")),
        "branch_id": branch_id,
        "year_id": year_id,
        "semester_id": semester_ref,
        "file_type": file_type,
        "url": url,
        "drive_link": url if is_drive_url(url.lower()) else None,
        "uploader_id": ctx.id,
        "category": clean_str(body.get("category")) or "resource",
        "subject": (clean_str(body.get("subject")) or "general").lower(),
        "unit": to_int(body.get("unit")) or 1,
        "date": utc_now_iso(),
        "is_pdf": "pdf" in (file_type or ""),
    }
    try:
        row = db.insert("resources", values)
    except DbError as exc:
        _audit_failure(db, ctx.email, ctx.role, "create", exc)
        raise InternalError("Failed to create resource") from exc

    log_audit(
        db,
        actor_email=ctx.email,
        actor_role=ctx.role,
        action="create",
        entity="resource",
        entity_id=row["id"],
        message=f"Representative created resource: {title}",
        after_data=values,
    )
    return {"id": row["id"], **values}


@router.patch("/representative/resources/{resource_id}")
async def representative_update_resource(
    resource_id: str,
    request: Request,
    ctx: Optional[UserContext] = Depends(get_user_context),
    db: DbClient = Depends(get_db_client),
):
    ctx = _require_representative(ctx)
    current = _managed_resource(db, ctx, resource_id)
    body, _ = await read_body(request)
    if body.get("branchId") or body.get("yearId") or body.get("semesterId"):
        raise Forbidden("Representatives cannot change resource branch/year assignments")
    values = _sanitize_update(body, REPRESENTATIVE_UPDATE_FIELDS)
    if not values:
        raise BadRequest("No valid fields to update")

    try:
        updated = db.update(query("resources").eq("id", resource_id), values)[0]
    except DbError as exc:
        _audit_failure(db, ctx.email, ctx.role, "update", exc, entity_id=resource_id)
        raise InternalError("Failed to update resource") from exc

    log_audit(
        db,
        actor_email=ctx.email,
        actor_role=ctx.role,
        action="update",
        entity="resource",
        entity_id=resource_id,
        message=f"Representative updated resource: {updated.get('title') or updated.get('name')}",
        before_data=current,
        after_data=updated,
    )
    return {"resource": updated}


@router.delete("/representative/resources/{resource_id}")
def representative_delete_resource(
    resource_id: str,
    ctx: Optional[UserContext] = Depends(get_user_context),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    ctx = _require_representative(ctx)
    resource = _managed_resource(db, ctx, resource_id)

    file_url = resource.get("drive_link") or resource.get("url")
    file_delete_success = False
    file_delete_error = None
    if try_parse_storage_path_from_url(file_url):
        file_delete_success = delete_stored_file(storage, file_url)
        if not file_delete_success:
            file_delete_error = "Stored file could not be removed"
    elif is_drive_url(file_url):
        file_delete_error = "Drive files are not managed by this service"

    try:
        db.delete(query("resources").eq("id", resource_id))
    except DbError as exc:
        _audit_failure(db, ctx.email, ctx.role, "delete", exc, entity_id=resource_id)
        raise InternalError("Failed to delete resource") from exc

    result = {"fileDeleteSuccess": file_delete_success, "fileDeleteError": file_delete_error}
    log_audit(
        db,
        actor_email=ctx.email,
        actor_role=ctx.role,
        action="delete",
        entity="resource",
        entity_id=resource_id,
        message=f"Representative deleted resource: {resource.get('title') or resource.get('name')}",
        before_data=resource,
        after_data=result,
    )
    return {"success": True, **result}
