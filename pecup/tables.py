"""
SQLAlchemy table definitions for the portal's Postgres schema.

Both database clients read these definitions: the SQLAlchemy client issues
statements against them and the in-memory client uses them for column
defaults and unique constraints.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, Integer, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

from pecup.types import ResourceType

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now_iso() -> str:
    # Fixed-width so ISO strings sort chronologically.
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _id_column():
    return Column(String, primary_key=True, default=new_id)


def _created_at():
    return Column(String, nullable=False, default=utc_now_iso)


def _updated_at():
    return Column(String, nullable=True, default=utc_now_iso)


class BranchRow(Base):
    __tablename__ = "branches"

    id = _id_column()
    name = Column(String, nullable=False)
    code = Column(String, nullable=False, unique=True)
    created_at = _created_at()
    updated_at = _updated_at()


class YearRow(Base):
    __tablename__ = "years"

    id = _id_column()
    batch_year = Column(Integer, nullable=False, unique=True)
    display_name = Column(String, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class SemesterRow(Base):
    __tablename__ = "semesters"
    __table_args__ = (UniqueConstraint("year_id", "semester_number"),)

    id = _id_column()
    semester_number = Column(Integer, nullable=False)
    year_id = Column(String, nullable=False, index=True)
    created_at = _created_at()
    updated_at = _updated_at()


class ProfileRow(Base):
    __tablename__ = "profiles"

    id = _id_column()
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    roll_number = Column(String, nullable=True, unique=True)
    branch_id = Column(String, nullable=True, index=True)
    year_id = Column(String, nullable=True, index=True)
    semester_id = Column(String, nullable=True, index=True)
    section = Column(String, nullable=True)
    role = Column(String, nullable=False, default="student")
    # Legacy columns: batch year and branch code.
    year = Column(Integer, nullable=True)
    branch = Column(String, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class RepresentativeRow(Base):
    __tablename__ = "representatives"
    __table_args__ = (UniqueConstraint("user_id", "branch_id", "year_id"),)

    id = _id_column()
    user_id = Column(String, nullable=False, index=True)
    branch_id = Column(String, nullable=False)
    year_id = Column(String, nullable=False)
    assigned_by = Column(String, nullable=True)
    assigned_at = Column(String, nullable=True, default=utc_now_iso)
    active = Column(Boolean, nullable=False, default=True)
    created_at = _created_at()
    updated_at = _updated_at()


class AdminRow(Base):
    __tablename__ = "admins"

    id = _id_column()
    email = Column(String, nullable=False, unique=True)
    role = Column(String, nullable=False, default="admin")
    created_at = _created_at()
    updated_at = _updated_at()


class SubjectRow(Base):
    __tablename__ = "subjects"

    id = _id_column()
    code = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    default_units = Column(Integer, nullable=True, default=5)
    resource_type = Column(String, nullable=False, default=ResourceType.RESOURCES.value)
    created_at = _created_at()
    updated_at = _updated_at()


class SubjectOfferingRow(Base):
    __tablename__ = "subject_offerings"
    __table_args__ = (
        UniqueConstraint("regulation", "branch", "year", "semester", "subject_id"),
    )

    id = _id_column()
    regulation = Column(String, nullable=False)
    branch = Column(String, nullable=False)
    year = Column(Integer, nullable=False)
    semester = Column(Integer, nullable=False)
    subject_id = Column(String, nullable=False, index=True)
    display_order = Column(Integer, nullable=True, default=0)
    active = Column(Boolean, nullable=False, default=True)
    created_at = _created_at()
    updated_at = _updated_at()


class ResourceRow(Base):
    __tablename__ = "resources"

    id = _id_column()
    category = Column(String, nullable=True)
    subject = Column(String, nullable=True, index=True)
    unit = Column(Integer, nullable=True)
    name = Column(String, nullable=True)
    title = Column(String, nullable=True)
    description = Column(String, nullable=True)
    type = Column(String, nullable=True)
    date = Column(String, nullable=True)
    url = Column(String, nullable=True)
    drive_link = Column(String, nullable=True)
    file_type = Column(String, nullable=True)
    is_pdf = Column(Boolean, nullable=False, default=False)
    year = Column(Integer, nullable=True)
    branch = Column(String, nullable=True)
    semester = Column(Integer, nullable=True)
    archived = Column(Boolean, nullable=False, default=False)
    branch_id = Column(String, nullable=True)
    year_id = Column(String, nullable=True)
    semester_id = Column(String, nullable=True)
    uploader_id = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    deleted_at = Column(String, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class ReminderRow(Base):
    __tablename__ = "reminders"

    id = _id_column()
    title = Column(String, nullable=False)
    due_date = Column(String, nullable=False)
    description = Column(String, nullable=True)
    icon_type = Column(String, nullable=True)
    status = Column(String, nullable=True)
    year = Column(Integer, nullable=True)
    branch = Column(String, nullable=True)
    deleted_at = Column(String, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class ExamRow(Base):
    __tablename__ = "exams"

    id = _id_column()
    subject = Column(String, nullable=False)
    exam_date = Column(String, nullable=False)
    description = Column(String, nullable=True)
    year = Column(Integer, nullable=True)
    branch = Column(String, nullable=True)
    deleted_at = Column(String, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class RecentUpdateRow(Base):
    __tablename__ = "recent_updates"

    id = _id_column()
    title = Column(String, nullable=True)
    date = Column(String, nullable=True)
    description = Column(String, nullable=True)
    year = Column(Integer, nullable=True)
    branch = Column(String, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class AuditLogRow(Base):
    __tablename__ = "audit_logs"

    id = _id_column()
    actor_email = Column(String, nullable=False)
    actor_role = Column(String, nullable=False)
    action = Column(String, nullable=False)
    entity = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    message = Column(String, nullable=True)
    before_data = Column(JSON, nullable=True)
    after_data = Column(JSON, nullable=True)
    created_at = _created_at()


class SettingsRow(Base):
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, default=1)
    drive_folder_id = Column(String, nullable=True)
    storage_bucket = Column(String, nullable=True)
    pdf_to_drive = Column(Boolean, nullable=False, default=True)
    non_pdf_to_storage = Column(Boolean, nullable=False, default=True)
    updated_at = _updated_at()


class AcademicConfigRow(Base):
    __tablename__ = "academic_config"

    config_key = Column(String, primary_key=True)
    config_value = Column(JSON, nullable=False)
    created_at = _created_at()
    updated_at = _updated_at()


class AcademicCalendarRow(Base):
    __tablename__ = "academic_calendar"

    id = Column(Integer, primary_key=True, default=1)
    current_year_id = Column(String, nullable=True)
    current_semester_id = Column(String, nullable=True)
    last_updated = Column(String, nullable=True, default=utc_now_iso)
    updated_by = Column(String, nullable=True)


class SemesterPromotionRow(Base):
    __tablename__ = "semester_promotions"

    id = _id_column()
    promoted_by = Column(String, nullable=True)
    from_semester_id = Column(String, nullable=False)
    to_semester_id = Column(String, nullable=False)
    branch_id = Column(String, nullable=False)
    year_id = Column(String, nullable=False)
    promotion_date = Column(String, nullable=False, default=utc_now_iso)
    notes = Column(String, nullable=True)
    created_at = _created_at()


class HeroTextRow(Base):
    __tablename__ = "hero_texts"

    id = _id_column()
    text = Column(String, nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    time_limit = Column(String, nullable=True)
    created_at = _created_at()
