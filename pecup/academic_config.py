"""
Batch-year to academic-year mappings.

Students store the calendar year they joined (batch year); the year of study
shown everywhere is derived from the ``year_mappings`` row in
``academic_config``. Mappings are memoised for a few minutes.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from pecup.db import DbClient, query
from pecup.errors import DbError

logger = logging.getLogger(__name__)

YEAR_MAPPINGS_KEY = "year_mappings"
PROGRAM_SETTINGS_KEY = "program_settings"
DEFAULT_YEAR_MAPPINGS: Dict[int, int] = {
    2025: 1,
    2024: 2,
    2023: 3,
    2022: 4,
    2021: 4,
}
DEFAULT_PROGRAM_LENGTH = 4
MIN_BATCH_YEAR = 1900
MAX_BATCH_YEAR = 2100


class InvalidYearMappings(ValueError):
    """Raised when submitted mappings fail validation."""


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def normalize_year_mappings(raw, *, require_all_levels: bool = False) -> Dict[int, int]:
    """
    Validate and normalise ``{batch_year: academic_year}``.

    Keys must be integers in 1900-2100 and values integers in 1-4. String
    keys and values (as they arrive from JSON) are accepted.
    """
    if not isinstance(raw, dict) or not raw:
        raise InvalidYearMappings("Mappings must be a non-empty object")
    normalized: Dict[int, int] = {}
    for key, value in raw.items():
        batch_year = _as_int(key)
        if batch_year is None or not MIN_BATCH_YEAR <= batch_year <= MAX_BATCH_YEAR:
            raise InvalidYearMappings(
                f"Invalid batch year: {key}. Must be an integer between "
                f"{MIN_BATCH_YEAR} and {MAX_BATCH_YEAR}"
            )
        if batch_year in normalized:
            raise InvalidYearMappings(f"Duplicate batch year: {batch_year}")
        academic_year = _as_int(value)
        if academic_year is None or not 1 <= academic_year <= 4:
            raise InvalidYearMappings(
                f"Invalid academic year for {batch_year}: {value}. Must be an integer between 1 and 4"
            )
        normalized[batch_year] = academic_year
    if require_all_levels:
        missing = sorted({1, 2, 3, 4} - set(normalized.values()))
        if missing:
            raise InvalidYearMappings(
                f"Missing academic years: {', '.join(str(level) for level in missing)}"
            )
    return normalized


class AcademicConfigManager:
    """Reads and updates academic configuration with a short-lived memo."""

    def __init__(
        self,
        db: DbClient,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._mappings: Optional[Dict[int, int]] = None
        self._loaded_at = 0.0

    def clear_cache(self) -> None:
        with self._lock:
            self._mappings = None
            self._loaded_at = 0.0

    def get_year_mappings(self) -> Dict[int, int]:
        with self._lock:
            if self._mappings is not None and self.clock() - self._loaded_at < self.ttl_seconds:
                return dict(self._mappings)

        mappings = dict(DEFAULT_YEAR_MAPPINGS)
        try:
            row = self.db.get("academic_config", YEAR_MAPPINGS_KEY)
        except DbError as exc:
            logger.warning("Could not read year mappings (%s); using defaults", exc)
            row = None
        if row is not None:
            try:
                mappings = normalize_year_mappings(row.get("config_value"))
            except InvalidYearMappings as exc:
                logger.warning("Stored year mappings are invalid (%s); using defaults", exc)

        with self._lock:
            self._mappings = mappings
            self._loaded_at = self.clock()
        return dict(mappings)

    def calculate_academic_year(self, batch_year: Optional[int]) -> int:
        if not batch_year:
            return 1
        mappings = self.get_year_mappings()
        if batch_year in mappings:
            return mappings[batch_year]
        current_year = datetime.now(timezone.utc).year
        return 1 if batch_year > current_year else 4

    def academic_year_to_batch_year(self, academic_year: int) -> int:
        if not 1 <= academic_year <= 4:
            raise ValueError(f"Invalid academic year: {academic_year}. Must be between 1 and 4")
        # Most recent batch wins when several map to the same level.
        for batch_year, level in sorted(self.get_year_mappings().items(), reverse=True):
            if level == academic_year:
                return batch_year
        raise ValueError(f"No batch year mapping found for academic year {academic_year}")

    def update_year_mappings(self, new_mappings, *, require_all_levels: bool = False) -> Dict[int, int]:
        normalized = normalize_year_mappings(
            new_mappings, require_all_levels=require_all_levels
        )
        self.db.upsert(
            "academic_config",
            {
                "config_key": YEAR_MAPPINGS_KEY,
                "config_value": {str(key): value for key, value in normalized.items()},
            },
            on_conflict=["config_key"],
        )
        self.clear_cache()
        logger.info("Updated year mappings: %s", normalized)
        return normalized

    def promote_all_students(self) -> Dict[int, int]:
        current = self.get_year_mappings()
        promoted = {batch: min(4, level + 1) for batch, level in current.items()}
        return self.update_year_mappings(promoted)

    def demote_all_students(self) -> Dict[int, int]:
        current = self.get_year_mappings()
        demoted = {batch: max(1, level - 1) for batch, level in current.items()}
        return self.update_year_mappings(demoted)

    def get_config(self) -> dict:
        program_length = DEFAULT_PROGRAM_LENGTH
        try:
            row = self.db.get("academic_config", PROGRAM_SETTINGS_KEY)
        except DbError as exc:
            logger.warning("Could not read program settings (%s); using defaults", exc)
            row = None
        if row and isinstance(row.get("config_value"), dict):
            program_length = _as_int(row["config_value"].get("programLength")) or program_length
        return {
            "yearMappings": self.get_year_mappings(),
            "programLength": program_length,
        }

    def student_distribution(self) -> Dict[int, int]:
        """Count profiles per academic year, keyed 1-4."""
        distribution = {level: 0 for level in range(1, 5)}
        years = {row["id"]: row["batch_year"] for row in self.db.select(query("years"))}
        for profile in self.db.select(query("profiles")):
            batch_year = years.get(profile.get("year_id")) or profile.get("year")
            level = self.calculate_academic_year(batch_year)
            distribution[level] = distribution.get(level, 0) + 1
        return distribution
