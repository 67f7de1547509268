"""
Lookups between human-facing codes (branch code, batch year, semester
number) and the id columns used by newer tables.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from pecup.db import DbClient, query


@dataclass
class ProfileRelations:
    profile: dict
    branch: Optional[dict]
    year: Optional[dict]
    semester: Optional[dict]


def branch_id_by_code(db: DbClient, code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    row = db.select_one(query("branches").eq("code", code))
    return row["id"] if row else None


def year_id_by_batch_year(db: DbClient, batch_year: Optional[int]) -> Optional[str]:
    if not batch_year:
        return None
    row = db.select_one(query("years").eq("batch_year", batch_year))
    return row["id"] if row else None


def semester_id(db: DbClient, year_id: Optional[str], semester_number: Optional[int]) -> Optional[str]:
    if not year_id or not semester_number:
        return None
    row = db.select_one(
        query("semesters").eq("year_id", year_id).eq("semester_number", semester_number)
    )
    return row["id"] if row else None


def load_profile_relations(db: DbClient, email: str) -> Optional[ProfileRelations]:
    profile = db.select_one(query("profiles").eq("email", email.lower()))
    if not profile:
        return None
    return ProfileRelations(
        profile=profile,
        branch=db.get("branches", profile["branch_id"]) if profile.get("branch_id") else None,
        year=db.get("years", profile["year_id"]) if profile.get("year_id") else None,
        semester=db.get("semesters", profile["semester_id"]) if profile.get("semester_id") else None,
    )


def batch_year_for_level(academic_year: int, now: Optional[datetime] = None) -> int:
    """
    Estimate the batch year of students currently in ``academic_year``.

    The academic year rolls over in July: before July the newest batch is
    still last calendar year's.
    """
    now = now or datetime.now(timezone.utc)
    base_batch = now.year if now.month >= 7 else now.year - 1
    return base_batch - (academic_year - 1)


def default_semester_for_month(now: Optional[datetime] = None) -> int:
    """Odd semesters start in August."""
    now = now or datetime.now(timezone.utc)
    return 2 if now.month >= 8 else 1
