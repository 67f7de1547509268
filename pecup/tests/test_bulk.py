import unittest
from datetime import date, datetime, timedelta, timezone
from unittest import mock

from support import add_profile, as_user, make_client, reset_backends, seed_academics

from pecup.bulk import load_dynamic_data
from pecup.db import InMemoryDbClient
from pecup.dependencies import get_caches, get_db_client
from pecup.errors import DbError


class BulkAcademicDataTests(unittest.TestCase):
    def setUp(self):
        reset_backends()
        self.client = make_client()
        self.db = get_db_client()
        self.seed = seed_academics(self.db)
        add_profile(self.db, self.seed, "stu@example.com")

        first = self.db.insert("subjects", {"code": "CS201", "name": "Data Structures"})
        second = self.db.insert("subjects", {"code": "CS202", "name": "Discrete Maths"})
        self.db.insert(
            "subject_offerings",
            {"regulation": "R23", "branch": "CSE", "year": 2, "semester": 1, "subject_id": first["id"], "display_order": 2},
        )
        self.db.insert(
            "subject_offerings",
            {"regulation": "R23", "branch": "CSE", "year": 2, "semester": 1, "subject_id": second["id"], "display_order": 1},
        )
        tomorrow = (datetime.now(timezone.utc).date() + timedelta(days=1)).isoformat()
        self.db.insert("exams", {"subject": "cs201", "exam_date": tomorrow, "branch": "CSE", "year": 2})
        self.db.insert("exams", {"subject": "ec201", "exam_date": tomorrow, "branch": "ECE", "year": 2})

    def test_requires_session(self):
        response = self.client.get("/api/bulk-academic-data")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "UNAUTHORIZED")

    def test_unknown_profile_is_not_found(self):
        response = self.client.get("/api/bulk-academic-data", headers=as_user("ghost@example.com"))
        self.assertEqual(response.status_code, 404)

    def test_payload_for_student_context(self):
        response = self.client.get("/api/bulk-academic-data", headers=as_user("stu@example.com"))
        self.assertEqual(response.status_code, 200)
        payload = response.json()

        self.assertEqual(payload["profile"]["branch"], "CSE")
        self.assertEqual(payload["profile"]["year"], 2)
        self.assertEqual(payload["profile"]["semester"], 1)
        self.assertEqual([s["code"] for s in payload["subjects"]], ["CS202", "CS201"])
        self.assertEqual(len(payload["static"]["branches"]), 2)
        self.assertEqual([e["subject"] for e in payload["dynamic"]["upcomingExams"]], ["cs201"])
        self.assertEqual(payload["contextWarnings"], [])
        self.assertEqual(
            payload["meta"]["cache"],
            {"profile": "miss", "subjects": "miss", "static": "miss", "dynamic": "miss"},
        )

    def test_second_request_is_served_from_cache(self):
        headers = as_user("stu@example.com")
        self.client.get("/api/bulk-academic-data", headers=headers)
        self.db.insert("branches", {"name": "Mechanical", "code": "MECH"})

        cached = self.client.get("/api/bulk-academic-data", headers=headers).json()
        self.assertEqual(
            cached["meta"]["cache"],
            {"profile": "hit", "subjects": "hit", "static": "hit", "dynamic": "hit"},
        )
        self.assertEqual(len(cached["static"]["branches"]), 2)

        fresh = self.client.get("/api/bulk-academic-data?refresh=true", headers=headers).json()
        self.assertEqual(fresh["meta"]["cache"]["static"], "bypass")
        self.assertEqual(fresh["meta"]["cache"]["profile"], "bypass")
        self.assertEqual(len(fresh["static"]["branches"]), 3)

    def test_missing_context_adds_warning(self):
        self.db.insert("profiles", {"email": "new@example.com", "name": "New"})
        payload = self.client.get("/api/bulk-academic-data", headers=as_user("new@example.com")).json()
        self.assertEqual(payload["subjects"], [])
        self.assertEqual(len(payload["contextWarnings"]), 1)

    def test_database_failure_is_internal_error(self):
        with mock.patch("pecup.bulk.load_profile_relations", side_effect=DbError("down")):
            response = self.client.get("/api/bulk-academic-data", headers=as_user("stu@example.com"))
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"]["code"], "INTERNAL_ERROR")

    def test_only_newest_regulation_is_listed(self):
        legacy = self.db.insert("subjects", {"code": "CS299", "name": "Legacy Elective"})
        self.db.insert(
            "subject_offerings",
            {"regulation": "R20", "branch": "CSE", "year": 2, "semester": 1, "subject_id": legacy["id"], "display_order": 0},
        )
        payload = self.client.get("/api/bulk-academic-data", headers=as_user("stu@example.com")).json()
        self.assertEqual([s["code"] for s in payload["subjects"]], ["CS202", "CS201"])

    def test_subjects_failure_returns_empty_list_without_caching(self):
        select = self.db.select

        def failing_select(q):
            if q.table == "subject_offerings":
                raise DbError("down")
            return select(q)

        with mock.patch.object(self.db, "select", side_effect=failing_select):
            response = self.client.get("/api/bulk-academic-data", headers=as_user("stu@example.com"))
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["subjects"], [])
        self.assertEqual(payload["profile"]["branch"], "CSE")
        self.assertIsNone(get_caches().subjects.get("CSE", 2, 1))

        recovered = self.client.get("/api/bulk-academic-data", headers=as_user("stu@example.com")).json()
        self.assertEqual([s["code"] for s in recovered["subjects"]], ["CS202", "CS201"])
        self.assertEqual(recovered["meta"]["cache"]["subjects"], "miss")

    def test_config_read_failure_uses_default_mappings(self):
        get = self.db.get

        def failing_get(table, row_id):
            if table == "academic_config":
                raise DbError("down")
            return get(table, row_id)

        with mock.patch.object(self.db, "get", side_effect=failing_get):
            response = self.client.get("/api/bulk-academic-data", headers=as_user("stu@example.com"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["profile"]["year"], 2)


class DynamicDataTests(unittest.TestCase):
    today = date(2026, 3, 10)

    def setUp(self):
        self.db = InMemoryDbClient()

    def _day(self, offset: int) -> str:
        return (self.today + timedelta(days=offset)).isoformat()

    def test_exam_window_covers_today_through_five_days(self):
        for offset in (-1, 0, 5, 6):
            self.db.insert("exams", {"subject": f"d{offset}", "exam_date": self._day(offset), "branch": "CSE", "year": 2})
        self.db.insert(
            "exams",
            {"subject": "cancelled", "exam_date": self._day(1), "branch": "CSE", "year": 2, "deleted_at": "2026-03-01T00:00:00Z"},
        )
        data = load_dynamic_data(self.db, "CSE", 2, self.today)
        self.assertEqual([exam["subject"] for exam in data["upcomingExams"]], ["d0", "d5"])

    def test_upcoming_reminders_are_future_live_and_capped(self):
        self.db.insert("reminders", {"title": "past", "due_date": self._day(-1), "branch": "CSE", "year": 2})
        self.db.insert(
            "reminders",
            {"title": "removed", "due_date": self._day(0), "branch": "CSE", "year": 2, "deleted_at": "2026-03-01T00:00:00Z"},
        )
        self.db.insert("reminders", {"title": "other branch", "due_date": self._day(0), "branch": "ECE", "year": 2})
        for offset in range(7):
            self.db.insert("reminders", {"title": f"r{offset}", "due_date": self._day(offset), "branch": "CSE", "year": 2})

        data = load_dynamic_data(self.db, "CSE", 2, self.today)
        self.assertEqual([r["title"] for r in data["upcomingReminders"]], ["r0", "r1", "r2", "r3", "r4"])


if __name__ == "__main__":
    unittest.main()
