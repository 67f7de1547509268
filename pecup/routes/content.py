"""
Admin CRUD for the dated feed tables: reminders, exams and recent updates.

The three tables share one shape (a dated item optionally scoped to an
academic year and branch), so their routers are built from a
``ContentTable`` description.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from pecup.academic_config import AcademicConfigManager
from pecup.audit import log_audit
from pecup.auth import get_session_email
from pecup.cache import AcademicCaches
from pecup.config import Settings, get_settings
from pecup.db import DbClient, query
from pecup.dependencies import get_academic_config, get_caches, get_db_client
from pecup.errors import BadRequest, DbError, Forbidden, InternalError, NotFound
from pecup.lookups import branch_id_by_code
from pecup.permissions import UserContext, require_admin, require_permission
from pecup.routes.common import (
    get_user_context,
    is_valid_date,
    optional_str,
    parse_page,
    parse_sort,
    resolve_year_id,
    to_int,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentTable:
    table: str
    path: str
    label: str
    audit_entity: str
    permission_entity: str
    required: tuple[str, ...]
    fields: tuple[str, ...]
    sort_columns: tuple[str, ...]
    default_sort: str
    default_order: str
    date_field: Optional[str] = None
    soft_delete_column: Optional[str] = "deleted_at"
    filters: tuple[str, ...] = ()


REMINDERS = ContentTable(
    table="reminders",
    path="/admin/reminders",
    label="reminder",
    audit_entity="reminder",
    permission_entity="reminders",
    required=("title", "due_date"),
    fields=("title", "due_date", "description", "icon_type", "status", "year", "branch"),
    sort_columns=("due_date", "title", "created_at"),
    default_sort="due_date",
    default_order="asc",
    date_field="due_date",
    filters=("status",),
)

EXAMS = ContentTable(
    table="exams",
    path="/admin/exams",
    label="exam",
    audit_entity="exam",
    permission_entity="exams",
    required=("subject", "exam_date"),
    fields=("subject", "exam_date", "description", "year", "branch"),
    sort_columns=("exam_date", "subject", "created_at"),
    default_sort="exam_date",
    default_order="asc",
    date_field="exam_date",
)

RECENT_UPDATES = ContentTable(
    table="recent_updates",
    path="/admin/recent-updates",
    label="recent update",
    audit_entity="recent_update",
    permission_entity="recentUpdates",
    required=("title",),
    fields=("title", "date", "description", "year", "branch"),
    sort_columns=("created_at", "date", "title"),
    default_sort="created_at",
    default_order="desc",
    soft_delete_column=None,
)


def _clean_values(content: ContentTable, body: dict, *, partial: bool) -> dict:
    """Keep the table's writable fields, normalising year and free text."""
    values = {}
    for name in content.fields:
        if partial and name not in body:
            continue
        raw = body.get(name)
        if name == "year":
            values[name] = to_int(raw) if raw else None
        elif name in content.required:
            values[name] = str(raw or "").strip()
        else:
            values[name] = optional_str(raw)
    return values


def _check_date(content: ContentTable, values: dict) -> None:
    if not content.date_field or content.date_field not in values:
        return
    if not is_valid_date(values[content.date_field]):
        raise BadRequest(f"{content.date_field} must be a valid date in YYYY-MM-DD format")


def _check_scope(
    db: DbClient,
    academic_config: AcademicConfigManager,
    ctx: UserContext,
    values: dict,
) -> None:
    """Representatives may only post for a year and branch they are assigned to."""
    if not ctx.is_representative:
        return
    if not values.get("year") or not values.get("branch"):
        raise BadRequest("Representatives must specify year and branch")
    branch_id = branch_id_by_code(db, values["branch"])
    year_id = resolve_year_id(db, academic_config, values["year"])
    if not branch_id or not year_id:
        raise BadRequest("Invalid branch or year")
    if not ctx.covers(branch_id, year_id):
        raise Forbidden("Forbidden: outside your assigned scope")


def build_content_router(content: ContentTable) -> APIRouter:
    router = APIRouter()

    def _existing(db: DbClient, item_id: str) -> Optional[dict]:
        row = db.get(content.table, item_id)
        if row and content.soft_delete_column and row.get(content.soft_delete_column):
            return None
        return row

    @router.get(content.path)
    def list_items(
        page: Optional[str] = Query(None),
        limit: Optional[str] = Query(None),
        sort: Optional[str] = Query(None),
        order: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        year: Optional[str] = Query(None),
        branch: Optional[str] = Query(None),
        ctx: Optional[UserContext] = Depends(get_user_context),
        db: DbClient = Depends(get_db_client),
    ):
        if ctx is None or not (ctx.is_admin or ctx.is_representative):
            raise Forbidden()
        paging = parse_page(page, limit)
        sort_column, sort_order = parse_sort(
            sort, order, content.sort_columns, content.default_sort, content.default_order
        )

        def build():
            q = query(content.table)
            if content.soft_delete_column:
                q.is_null(content.soft_delete_column)
            if status and "status" in content.filters:
                q.eq("status", status)
            year_value = to_int(year)
            if year_value:
                q.eq("year", year_value)
            if branch:
                q.eq("branch", branch)
            return q

        try:
            count = db.count(build())
            rows = db.select(
                build()
                .order(sort_column, desc=sort_order == "desc")
                .limit(paging.limit)
                .offset(paging.offset)
            )
        except DbError as exc:
            raise InternalError(f"Failed to list {content.label}s") from exc
        return {"data": rows, "meta": paging.meta(count, sort_column, sort_order)}

    @router.post(content.path)
    def create_item(
        body: dict = Body(default_factory=dict),
        ctx: Optional[UserContext] = Depends(get_user_context),
        db: DbClient = Depends(get_db_client),
        caches: AcademicCaches = Depends(get_caches),
        academic_config: AcademicConfigManager = Depends(get_academic_config),
    ):
        ctx = require_permission(ctx, "write", content.permission_entity)
        values = _clean_values(content, body, partial=False)
        missing = [name for name in content.required if not values[name]]
        if missing:
            verb = "is" if len(content.required) == 1 else "are"
            raise BadRequest(f"{' and '.join(content.required)} {verb} required")
        _check_date(content, values)
        _check_scope(db, academic_config, ctx, values)

        try:
            row = db.insert(content.table, values)
        except DbError as exc:
            log_audit(
                db,
                actor_email=ctx.email,
                actor_role=ctx.role,
                action="create",
                entity=content.audit_entity,
                success=False,
                message=str(exc),
            )
            raise InternalError(f"Failed to create {content.label}") from exc

        log_audit(
            db,
            actor_email=ctx.email,
            actor_role=ctx.role,
            action="create",
            entity=content.audit_entity,
            entity_id=row["id"],
            after_data=values,
        )
        caches.invalidate_dynamic()
        return {"id": row["id"], **values}

    @router.patch(content.path + "/{item_id}")
    def update_item(
        item_id: str,
        body: dict = Body(default_factory=dict),
        email: Optional[str] = Depends(get_session_email),
        db: DbClient = Depends(get_db_client),
        caches: AcademicCaches = Depends(get_caches),
        settings: Settings = Depends(get_settings),
    ):
        admin = require_admin(db, email, settings)
        values = _clean_values(content, body, partial=True)
        _check_date(content, values)

        before = _existing(db, item_id)
        if before is None:
            log_audit(
                db,
                actor_email=admin.email,
                actor_role=admin.role,
                action="update",
                entity=content.audit_entity,
                entity_id=item_id,
                success=False,
                message="Record not found",
            )
            raise NotFound("Record not found")
        if not values:
            return before

        try:
            updated = db.update(query(content.table).eq("id", item_id), values)
        except DbError as exc:
            log_audit(
                db,
                actor_email=admin.email,
                actor_role=admin.role,
                action="update",
                entity=content.audit_entity,
                entity_id=item_id,
                success=False,
                message=str(exc),
            )
            raise InternalError(f"Failed to update {content.label}") from exc

        after = updated[0] if updated else None
        log_audit(
            db,
            actor_email=admin.email,
            actor_role=admin.role,
            action="update",
            entity=content.audit_entity,
            entity_id=item_id,
            before_data=before,
            after_data=after,
        )
        caches.invalidate_dynamic()
        return after

    @router.delete(content.path + "/{item_id}")
    def delete_item(
        item_id: str,
        email: Optional[str] = Depends(get_session_email),
        db: DbClient = Depends(get_db_client),
        caches: AcademicCaches = Depends(get_caches),
        settings: Settings = Depends(get_settings),
    ):
        admin = require_admin(db, email, settings)
        before = _existing(db, item_id)
        if before is None:
            log_audit(
                db,
                actor_email=admin.email,
                actor_role=admin.role,
                action="delete",
                entity=content.audit_entity,
                entity_id=item_id,
                success=False,
                message="Record not found",
            )
            raise NotFound("Record not found")

        try:
            db.delete(query(content.table).eq("id", item_id))
        except DbError as exc:
            log_audit(
                db,
                actor_email=admin.email,
                actor_role=admin.role,
                action="delete",
                entity=content.audit_entity,
                entity_id=item_id,
                success=False,
                message=str(exc),
            )
            raise InternalError(f"Failed to delete {content.label}") from exc

        log_audit(
            db,
            actor_email=admin.email,
            actor_role=admin.role,
            action="delete",
            entity=content.audit_entity,
            entity_id=item_id,
            before_data=before,
        )
        caches.invalidate_dynamic()
        return {"success": True}

    return router


router = APIRouter()
for _spec in (REMINDERS, EXAMS, RECENT_UPDATES):
    router.include_router(build_content_router(_spec))
