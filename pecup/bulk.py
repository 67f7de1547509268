"""
Bulk academic data for the student home screen.

One request returns the caller's profile, the subjects of their current
(branch, year, semester), the static lookup tables and the dynamic widgets
(recent updates, upcoming exams, upcoming reminders). Each section is read
through its cache; subjects, static and dynamic data load concurrently.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from pecup.academic_config import AcademicConfigManager
from pecup.cache import AcademicCaches
from pecup.config import Settings
from pecup.db import DbClient, query
from pecup.errors import DbError, InternalError, NotFound
from pecup.lookups import load_profile_relations
from pecup.types import CacheStatus

logger = logging.getLogger(__name__)

MISSING_CONTEXT_WARNING = (
    "Missing branch/year/semester context. If this persists, please log out "
    "and log in again to refresh your profile data."
)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def has_context(profile: dict) -> bool:
    return bool(profile.get("branch") and profile.get("year") and profile.get("semester"))


def load_subjects_for_context(
    db: DbClient, branch: str, year: int, semester: int
) -> list[dict]:
    """
    Subjects offered to a context, in display order.

    Only the newest regulation active for the context is used. Query
    failures yield an empty list so the rest of the page still renders.
    """
    try:
        latest = db.select_one(
            query("subject_offerings")
            .eq("branch", branch)
            .eq("year", year)
            .eq("semester", semester)
            .eq("active", True)
            .order("regulation", desc=True)
            .limit(1)
        )
        offerings_query = (
            query("subject_offerings")
            .eq("branch", branch)
            .eq("year", year)
            .eq("semester", semester)
            .eq("active", True)
        )
        if latest and latest.get("regulation"):
            offerings_query.eq("regulation", latest["regulation"])
        offerings = db.select(offerings_query.order("display_order"))
        if not offerings:
            return []
        order = {o["subject_id"]: o.get("display_order") or 0 for o in offerings}
        subjects = db.select(query("subjects").in_("id", list(order)))
    except DbError:
        logger.exception("Subjects query failed for %s/%s/%s", branch, year, semester)
        return []
    subjects.sort(key=lambda subject: order.get(subject["id"], 0))
    return [
        {
            "id": subject["id"],
            "code": subject["code"],
            "name": subject["name"],
            "resource_type": subject.get("resource_type"),
        }
        for subject in subjects
    ]


def load_static_data(db: DbClient) -> dict:
    return {
        "branches": db.select(query("branches").order("code")),
        "years": db.select(query("years").order("batch_year", desc=True)),
        "semesters": db.select(query("semesters").order("semester_number")),
    }


def load_dynamic_data(
    db: DbClient,
    branch: Optional[str],
    year: Optional[int],
    today: date,
    exam_window_days: int = 5,
) -> dict:
    start = today.isoformat()
    end = (today + timedelta(days=exam_window_days)).isoformat()

    updates_query = query("recent_updates").order("created_at", desc=True).limit(10)
    if branch and year:
        updates_query.eq("branch", branch).eq("year", year)

    exams_query = (
        query("exams")
        .is_null("deleted_at")
        .gte("exam_date", start)
        .lte("exam_date", end)
        .order("exam_date")
    )
    if branch:
        exams_query.eq("branch", branch)
    if year:
        exams_query.eq("year", year)

    reminders_query = (
        query("reminders")
        .is_null("deleted_at")
        .gte("due_date", start)
        .order("due_date")
        .limit(5)
    )
    if branch and year:
        reminders_query.eq("branch", branch).eq("year", year)

    return {
        "recentUpdates": db.select(updates_query),
        "upcomingExams": db.select(exams_query),
        "upcomingReminders": db.select(reminders_query),
    }


class BulkAcademicDataService:
    """Aggregates the home-screen payload with cache-aside reads."""

    def __init__(
        self,
        db: DbClient,
        caches: AcademicCaches,
        academic_config: AcademicConfigManager,
        settings: Settings,
        today: Callable[[], date] = utc_today,
    ):
        self.db = db
        self.caches = caches
        self.academic_config = academic_config
        self.settings = settings
        self.today = today

    def _profile(self, email: str, refresh: bool) -> tuple[dict, CacheStatus]:
        if not refresh:
            cached = self.caches.profile.get(email)
            if cached is not None:
                return cached, CacheStatus.HIT

        try:
            relations = load_profile_relations(self.db, email)
        except DbError as exc:
            logger.exception("Profile query failed for bulk data")
            raise InternalError("Database error loading profile") from exc
        if relations is None:
            raise NotFound("Profile not found")

        row = relations.profile
        batch_year = relations.year["batch_year"] if relations.year else None
        profile = {
            "id": row["id"],
            "roll_number": row.get("roll_number"),
            "name": row.get("name"),
            "email": row["email"],
            "section": row.get("section"),
            "role": row.get("role"),
            "year": self.academic_config.calculate_academic_year(batch_year)
            if batch_year
            else None,
            "branch": relations.branch["code"] if relations.branch else None,
            "semester": relations.semester["semester_number"]
            if relations.semester
            else None,
        }
        self.caches.profile.set(email, profile)
        return profile, CacheStatus.BYPASS if refresh else CacheStatus.MISS

    def _subjects(self, profile: dict, refresh: bool) -> tuple[list, CacheStatus]:
        if not has_context(profile):
            return [], CacheStatus.MISS
        branch, year, semester = profile["branch"], profile["year"], profile["semester"]
        if not refresh:
            cached = self.caches.subjects.get(branch, year, semester)
            if cached is not None:
                return cached, CacheStatus.HIT
        subjects = load_subjects_for_context(self.db, branch, year, semester)
        if subjects:
            self.caches.subjects.set(branch, year, semester, subjects)
        return subjects, CacheStatus.BYPASS if refresh else CacheStatus.MISS

    def _static(self, refresh: bool) -> tuple[dict, CacheStatus]:
        if not refresh:
            cached = self.caches.static.get()
            if cached is not None:
                return cached, CacheStatus.HIT
        data = load_static_data(self.db)
        self.caches.static.set(data)
        return data, CacheStatus.BYPASS if refresh else CacheStatus.MISS

    def _dynamic(self, profile: dict, refresh: bool) -> tuple[dict, CacheStatus]:
        branch, year = profile.get("branch"), profile.get("year")
        if not refresh:
            cached = self.caches.dynamic.get(branch, year)
            if cached is not None:
                return cached, CacheStatus.HIT
        data = load_dynamic_data(
            self.db,
            branch,
            year,
            self.today(),
            exam_window_days=self.settings.bulk_exam_window_days,
        )
        self.caches.dynamic.set(branch, year, data)
        return data, CacheStatus.BYPASS if refresh else CacheStatus.MISS

    def load(self, email: str, *, refresh: bool = False) -> dict:
        started = time.perf_counter()
        profile, profile_status = self._profile(email, refresh)

        warnings = []
        if not has_context(profile):
            logger.warning("Profile %s is missing academic context", profile.get("id"))
            warnings.append(MISSING_CONTEXT_WARNING)

        with ThreadPoolExecutor(max_workers=3) as executor:
            subjects_future = executor.submit(self._subjects, profile, refresh)
            static_future = executor.submit(self._static, refresh)
            dynamic_future = executor.submit(self._dynamic, profile, refresh)
            subjects, subjects_status = subjects_future.result()
            static, static_status = static_future.result()
            dynamic, dynamic_status = dynamic_future.result()

        loaded_in_ms = int((time.perf_counter() - started) * 1000)
        logger.info("Bulk academic data for %s loaded in %dms", profile["id"], loaded_in_ms)
        return {
            "profile": profile,
            "subjects": subjects,
            "static": static,
            "dynamic": dynamic,
            "contextWarnings": warnings,
            "timestamp": int(time.time() * 1000),
            "meta": {
                "loadedInMs": loaded_in_ms,
                "cache": {
                    "profile": profile_status.value,
                    "subjects": subjects_status.value,
                    "static": static_status.value,
                    "dynamic": dynamic_status.value,
                },
            },
        }
