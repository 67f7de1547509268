import unittest
from unittest import mock

from pecup.academic_config import (
    DEFAULT_YEAR_MAPPINGS,
    AcademicConfigManager,
    InvalidYearMappings,
    normalize_year_mappings,
)
from pecup.db import InMemoryDbClient
from pecup.errors import DbError


class NormalizeYearMappingsTests(unittest.TestCase):
    def test_accepts_string_keys_and_values(self):
        self.assertEqual(normalize_year_mappings({"2024": "2", 2023: 3}), {2024: 2, 2023: 3})

    def test_rejects_bad_batch_year(self):
        with self.assertRaises(InvalidYearMappings) as ctx:
            normalize_year_mappings({"1800": 1})
        self.assertIn("Invalid batch year: 1800", str(ctx.exception))

    def test_rejects_bad_academic_year(self):
        with self.assertRaises(InvalidYearMappings):
            normalize_year_mappings({"2024": 5})
        with self.assertRaises(InvalidYearMappings):
            normalize_year_mappings({"2024": True})

    def test_rejects_empty(self):
        with self.assertRaises(InvalidYearMappings):
            normalize_year_mappings({})

    def test_require_all_levels(self):
        with self.assertRaises(InvalidYearMappings) as ctx:
            normalize_year_mappings({"2024": 1, "2023": 2}, require_all_levels=True)
        self.assertEqual(str(ctx.exception), "Missing academic years: 3, 4")


class AcademicConfigManagerTests(unittest.TestCase):
    def setUp(self):
        self.now = 1000.0
        self.db = InMemoryDbClient()
        self.manager = AcademicConfigManager(self.db, ttl_seconds=300, clock=lambda: self.now)

    def test_defaults_without_stored_row(self):
        self.assertEqual(self.manager.get_year_mappings(), DEFAULT_YEAR_MAPPINGS)
        self.assertEqual(self.manager.calculate_academic_year(2024), 2)
        self.assertEqual(self.manager.calculate_academic_year(None), 1)
        self.assertEqual(self.manager.calculate_academic_year(2999), 1)
        self.assertEqual(self.manager.calculate_academic_year(1990), 4)

    def test_most_recent_batch_wins_for_level(self):
        self.assertEqual(self.manager.academic_year_to_batch_year(4), 2022)
        with self.assertRaises(ValueError):
            self.manager.academic_year_to_batch_year(5)

    def test_stored_mappings_are_memoised(self):
        self.manager.update_year_mappings({"2026": 1, "2025": 2, "2024": 3, "2023": 4})
        self.assertEqual(self.manager.calculate_academic_year(2026), 1)

        self.db.upsert(
            "academic_config",
            {"config_key": "year_mappings", "config_value": {"2026": 2}},
            on_conflict=["config_key"],
        )
        self.assertEqual(self.manager.calculate_academic_year(2026), 1)
        self.now += 301
        self.assertEqual(self.manager.calculate_academic_year(2026), 2)

    def test_invalid_stored_mappings_fall_back_to_defaults(self):
        self.db.insert("academic_config", {"config_key": "year_mappings", "config_value": {"abc": 9}})
        self.assertEqual(self.manager.get_year_mappings(), DEFAULT_YEAR_MAPPINGS)

    def test_read_failure_falls_back_to_memoised_defaults(self):
        self.manager.update_year_mappings({"2026": 1, "2025": 2, "2024": 3, "2023": 4})
        with mock.patch.object(self.db, "get", side_effect=DbError("down")) as failing_get:
            self.assertEqual(self.manager.get_year_mappings(), DEFAULT_YEAR_MAPPINGS)
            self.assertEqual(self.manager.calculate_academic_year(2024), 2)
            self.assertEqual(self.manager.get_config()["programLength"], 4)
        # The mappings read is memoised; the second call is for program settings.
        self.assertEqual(failing_get.call_count, 2)

        self.assertEqual(self.manager.get_year_mappings(), DEFAULT_YEAR_MAPPINGS)
        self.now += 301
        self.assertEqual(self.manager.calculate_academic_year(2026), 1)

    def test_promote_and_demote_clamp(self):
        promoted = self.manager.promote_all_students()
        self.assertEqual(promoted, {2025: 2, 2024: 3, 2023: 4, 2022: 4, 2021: 4})
        demoted = self.manager.demote_all_students()
        self.assertEqual(demoted, {2025: 1, 2024: 2, 2023: 3, 2022: 3, 2021: 3})

    def test_student_distribution(self):
        year = self.db.insert("years", {"batch_year": 2024})
        self.db.insert("profiles", {"email": "a@example.com", "year_id": year["id"]})
        self.db.insert("profiles", {"email": "b@example.com", "year": 2022})
        self.assertEqual(self.manager.student_distribution(), {1: 0, 2: 1, 3: 0, 4: 1})

    def test_config_includes_program_length(self):
        self.assertEqual(self.manager.get_config()["programLength"], 4)
        self.db.insert(
            "academic_config", {"config_key": "program_settings", "config_value": {"programLength": "5"}}
        )
        config = self.manager.get_config()
        self.assertEqual(config["programLength"], 5)
        self.assertEqual(config["yearMappings"], DEFAULT_YEAR_MAPPINGS)


if __name__ == "__main__":
    unittest.main()
