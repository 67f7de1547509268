import unittest

from support import add_admin, add_profile, add_representative, as_user, make_client, reset_backends, seed_academics

from pecup.db import query
from pecup.dependencies import get_caches, get_db_client


class ContentRoutesTests(unittest.TestCase):
    def setUp(self):
        reset_backends()
        self.client = make_client()
        self.db = get_db_client()
        self.seed = seed_academics(self.db)
        add_admin(self.db, "admin@example.com")
        add_profile(self.db, self.seed, "admin@example.com")
        add_representative(self.db, self.seed, "rep@example.com")
        add_profile(self.db, self.seed, "stu@example.com")
        self.admin = as_user("admin@example.com")

    def test_reminder_lifecycle(self):
        created = self.client.post(
            "/api/admin/reminders",
            json={"title": " Fee payment ", "due_date": "2026-11-01", "year": "2", "branch": "CSE"},
            headers=self.admin,
        )
        self.assertEqual(created.status_code, 200)
        reminder = created.json()
        self.assertEqual(reminder["title"], "Fee payment")
        self.assertEqual(reminder["year"], 2)

        listing = self.client.get("/api/admin/reminders", headers=self.admin).json()
        self.assertEqual([row["id"] for row in listing["data"]], [reminder["id"]])
        self.assertEqual(listing["meta"]["sort"], "due_date")
        self.assertEqual(listing["meta"]["order"], "asc")

        updated = self.client.patch(
            f"/api/admin/reminders/{reminder['id']}", json={"status": "done"}, headers=self.admin
        )
        self.assertEqual(updated.json()["status"], "done")
        self.assertEqual(updated.json()["title"], "Fee payment")

        deleted = self.client.delete(f"/api/admin/reminders/{reminder['id']}", headers=self.admin)
        self.assertEqual(deleted.json(), {"success": True})
        self.assertIsNone(self.db.get("reminders", reminder["id"]))

        actions = {row["action"] for row in self.db.select(query("audit_logs").eq("entity", "reminder"))}
        self.assertEqual(actions, {"create", "update", "delete"})

    def test_required_fields_and_dates(self):
        missing = self.client.post("/api/admin/reminders", json={"title": "x"}, headers=self.admin)
        self.assertEqual(missing.json()["error"]["message"], "title and due_date are required")

        bad_date = self.client.post("/api/admin/exams", json={"subject": "dbms", "exam_date": "01/02/2026"}, headers=self.admin)
        self.assertEqual(bad_date.status_code, 400)
        self.assertEqual(bad_date.json()["error"]["message"], "exam_date must be a valid date in YYYY-MM-DD format")

        impossible = self.client.post("/api/admin/exams", json={"subject": "dbms", "exam_date": "2026-02-30"}, headers=self.admin)
        self.assertEqual(impossible.status_code, 400)

        no_title = self.client.post("/api/admin/recent-updates", json={}, headers=self.admin)
        self.assertEqual(no_title.json()["error"]["message"], "title is required")

    def test_create_invalidates_dynamic_cache(self):
        caches = get_caches()
        caches.dynamic.set("CSE", 2, {"upcomingExams": []})
        self.client.post("/api/admin/exams", json={"subject": "dbms", "exam_date": "2026-12-01"}, headers=self.admin)
        self.assertIsNone(caches.dynamic.get("CSE", 2))

    def test_representative_scope(self):
        rep = as_user("rep@example.com")
        unscoped = self.client.post("/api/admin/exams", json={"subject": "dbms", "exam_date": "2026-12-01"}, headers=rep)
        self.assertEqual(unscoped.json()["error"]["message"], "Representatives must specify year and branch")

        outside = self.client.post(
            "/api/admin/exams",
            json={"subject": "dbms", "exam_date": "2026-12-01", "year": 2, "branch": "ECE"},
            headers=rep,
        )
        self.assertEqual(outside.status_code, 403)

        unknown = self.client.post(
            "/api/admin/exams",
            json={"subject": "dbms", "exam_date": "2026-12-01", "year": 2, "branch": "MECH"},
            headers=rep,
        )
        self.assertEqual(unknown.json()["error"]["message"], "Invalid branch or year")

        inside = self.client.post(
            "/api/admin/exams",
            json={"subject": "dbms", "exam_date": "2026-12-01", "year": 2, "branch": "CSE"},
            headers=rep,
        )
        self.assertEqual(inside.status_code, 200)

        # Edits and deletions stay with admins.
        patched = self.client.patch(f"/api/admin/exams/{inside.json()['id']}", json={"subject": "os"}, headers=rep)
        self.assertEqual(patched.status_code, 403)

    def test_students_cannot_manage_content(self):
        student = as_user("stu@example.com")
        self.assertEqual(self.client.get("/api/admin/exams", headers=student).status_code, 403)
        self.assertEqual(
            self.client.post("/api/admin/exams", json={"subject": "x", "exam_date": "2026-12-01"}, headers=student).status_code,
            403,
        )
        self.assertEqual(self.client.post("/api/admin/exams", json={}).status_code, 401)

    def test_missing_records(self):
        self.assertEqual(self.client.patch("/api/admin/exams/missing", json={"subject": "x"}, headers=self.admin).status_code, 404)
        self.assertEqual(self.client.delete("/api/admin/recent-updates/missing", headers=self.admin).status_code, 404)
        soft_deleted = self.db.insert(
            "reminders", {"title": "old", "due_date": "2026-01-01", "deleted_at": "2026-01-02T00:00:00Z"}
        )
        self.assertEqual(
            self.client.delete(f"/api/admin/reminders/{soft_deleted['id']}", headers=self.admin).status_code,
            404,
        )

    def test_list_filters(self):
        self.db.insert("recent_updates", {"title": "CSE 2", "year": 2, "branch": "CSE"})
        self.db.insert("recent_updates", {"title": "ECE 2", "year": 2, "branch": "ECE"})
        listing = self.client.get("/api/admin/recent-updates", params={"branch": "ECE"}, headers=self.admin).json()
        self.assertEqual([row["title"] for row in listing["data"]], ["ECE 2"])
        self.assertEqual(listing["meta"]["count"], 1)


if __name__ == "__main__":
    unittest.main()
