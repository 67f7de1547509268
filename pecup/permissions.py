"""
Role-based access control.

A ``UserContext`` is loaded per request from the ``profiles``, ``admins`` and
``representatives`` tables; the helpers below turn it into permission
checks for admins, representatives and students.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

from pecup.config import Settings
from pecup.db import DbClient, query
from pecup.errors import Forbidden, Unauthorized
from pecup.types import AdminRole, UserRole

logger = logging.getLogger(__name__)

ENTITIES = ("resources", "reminders", "recentUpdates", "exams", "profiles")
ACTIONS = ("read", "write", "delete")


@dataclass
class RepresentativeAssignment:
    branch_id: str
    year_id: str
    branch_code: Optional[str] = None
    admission_year: Optional[int] = None


@dataclass
class UserContext:
    id: str
    email: str
    name: Optional[str]
    role: str
    year: Optional[int] = None
    branch: Optional[str] = None
    branch_id: Optional[str] = None
    year_id: Optional[str] = None
    semester_id: Optional[str] = None
    representatives: list[dict] = field(default_factory=list)
    representative_assignments: list[RepresentativeAssignment] = field(
        default_factory=list
    )

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.ADMIN.value, UserRole.SUPERADMIN.value)

    @property
    def is_representative(self) -> bool:
        return self.role == UserRole.REPRESENTATIVE.value

    def covers(self, branch_id: Optional[str], year_id: Optional[str]) -> bool:
        return any(
            assignment.branch_id == branch_id and assignment.year_id == year_id
            for assignment in self.representative_assignments
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "year": self.year,
            "branch": self.branch,
            "branchId": self.branch_id,
            "yearId": self.year_id,
            "semesterId": self.semester_id,
            "representatives": self.representatives,
            "representativeAssignments": [
                asdict(assignment) for assignment in self.representative_assignments
            ],
        }


@dataclass
class AdminContext:
    email: str
    role: str
    id: Optional[str] = None


def load_user_context(db: DbClient, email: Optional[str]) -> Optional[UserContext]:
    """Build the caller's context, or ``None`` when no profile exists."""
    if not email:
        return None
    profile = db.select_one(query("profiles").eq("email", email.lower()))
    if not profile:
        return None

    role = profile.get("role") or UserRole.STUDENT.value
    admin = db.select_one(query("admins").eq("email", email.lower()))
    if admin:
        role = admin["role"]

    branch = db.get("branches", profile["branch_id"]) if profile.get("branch_id") else None
    year = db.get("years", profile["year_id"]) if profile.get("year_id") else None

    representatives: list[dict] = []
    assignments: list[RepresentativeAssignment] = []
    if role == UserRole.REPRESENTATIVE.value:
        representatives = db.select(
            query("representatives").eq("user_id", profile["id"]).eq("active", True)
        )
        for rep in representatives:
            rep_branch = db.get("branches", rep["branch_id"])
            rep_year = db.get("years", rep["year_id"])
            assignments.append(
                RepresentativeAssignment(
                    branch_id=rep["branch_id"],
                    year_id=rep["year_id"],
                    branch_code=rep_branch["code"] if rep_branch else None,
                    admission_year=rep_year["batch_year"] if rep_year else None,
                )
            )

    return UserContext(
        id=profile["id"],
        email=profile["email"],
        name=profile.get("name"),
        role=role,
        year=year["batch_year"] if year else profile.get("year"),
        branch=branch["code"] if branch else profile.get("branch"),
        branch_id=profile.get("branch_id"),
        year_id=profile.get("year_id"),
        semester_id=profile.get("semester_id"),
        representatives=representatives,
        representative_assignments=assignments,
    )


def require_admin(
    db: DbClient,
    email: Optional[str],
    settings: Settings,
    min_role: AdminRole = AdminRole.ADMIN,
) -> AdminContext:
    """
    Resolve the caller as an admin or raise ``Unauthorized``/``Forbidden``.

    The ``admins`` table is authoritative; ``profiles.role`` is consulted when
    the email has no admin row. In development, emails listed in
    ``AUTHORIZED_EMAILS`` pass as superadmin.
    """
    if not email:
        raise Unauthorized()
    email = email.lower()

    admin = db.select_one(query("admins").eq("email", email))
    if admin:
        context = AdminContext(email=email, role=admin["role"], id=admin.get("id"))
    else:
        profile = db.select_one(query("profiles").eq("email", email))
        profile_role = (profile or {}).get("role")
        if profile_role in (AdminRole.ADMIN.value, AdminRole.SUPERADMIN.value):
            context = AdminContext(email=email, role=profile_role, id=profile.get("id"))
        elif settings.is_development and email in settings.authorized_email_list():
            logger.warning("Development admin bypass used for %s", email)
            return AdminContext(email=email, role=AdminRole.SUPERADMIN.value)
        else:
            raise Forbidden()

    if min_role == AdminRole.SUPERADMIN and context.role != AdminRole.SUPERADMIN.value:
        raise Forbidden()
    return context


def can_manage_resources(
    ctx: UserContext, branch_id: Optional[str], year_id: Optional[str]
) -> bool:
    if ctx.is_admin:
        return True
    if ctx.is_representative:
        return ctx.covers(branch_id, year_id)
    return False


def can_promote_semester(
    ctx: UserContext, branch_id: Optional[str], year_id: Optional[str]
) -> bool:
    return can_manage_resources(ctx, branch_id, year_id)


def _matrix(read: bool, write: bool, delete: bool, *, profiles: tuple) -> dict:
    permissions = {}
    for entity in ENTITIES:
        if entity == "profiles":
            can_read, can_write, can_delete = profiles
        else:
            can_read, can_write, can_delete = read, write, delete
        permissions[entity] = {
            "canRead": can_read,
            "canWrite": can_write,
            "canDelete": can_delete,
        }
    return permissions


def get_user_permissions(ctx: Optional[UserContext]) -> dict:
    if ctx is None:
        return {
            **_matrix(False, False, False, profiles=(False, False, False)),
            "canPromoteSemester": False,
        }
    if ctx.is_admin:
        return {
            **_matrix(True, True, True, profiles=(True, True, True)),
            "canPromoteSemester": True,
        }
    if ctx.is_representative:
        return {
            **_matrix(True, True, True, profiles=(False, False, False)),
            "canPromoteSemester": True,
            "scopeRestrictions": {
                "branchIds": sorted({a.branch_id for a in ctx.representative_assignments}),
                "yearIds": sorted({a.year_id for a in ctx.representative_assignments}),
            },
        }
    if ctx.role == UserRole.STUDENT.value:
        return {
            **_matrix(True, False, False, profiles=(False, False, False)),
            "canPromoteSemester": False,
        }
    return {
        **_matrix(False, False, False, profiles=(False, False, False)),
        "canPromoteSemester": False,
    }


def require_permission(
    ctx: Optional[UserContext],
    action: str,
    entity: str,
    branch_id: Optional[str] = None,
    year_id: Optional[str] = None,
) -> UserContext:
    if ctx is None:
        raise Unauthorized()
    if action not in ACTIONS or entity not in ENTITIES:
        raise Forbidden(f"Unknown permission {action}:{entity}")
    flag = {"read": "canRead", "write": "canWrite", "delete": "canDelete"}[action]
    if not get_user_permissions(ctx)[entity][flag]:
        raise Forbidden(f"Insufficient permissions: {action} {entity}")
    if ctx.is_representative and branch_id and year_id and not ctx.covers(branch_id, year_id):
        raise Forbidden("Access denied: outside your assigned branch and year")
    return ctx


def resource_filter(ctx: UserContext) -> dict:
    """Id filters for resource listings; an empty dict means unrestricted."""
    if ctx.is_admin:
        return {}
    if ctx.is_representative:
        return {
            "branch_ids": sorted({a.branch_id for a in ctx.representative_assignments}),
            "year_ids": sorted({a.year_id for a in ctx.representative_assignments}),
        }
    return {
        "branch_ids": [ctx.branch_id] if ctx.branch_id else [],
        "year_ids": [ctx.year_id] if ctx.year_id else [],
        "semester_ids": [ctx.semester_id] if ctx.semester_id else [],
    }


def can_access_resource(ctx: UserContext, resource: dict) -> bool:
    if ctx.is_admin:
        return True
    if ctx.is_representative:
        return ctx.covers(resource.get("branch_id"), resource.get("year_id"))
    return (
        ctx.branch_id is not None
        and resource.get("branch_id") == ctx.branch_id
        and resource.get("year_id") == ctx.year_id
        and resource.get("semester_id") == ctx.semester_id
    )
