import json
import unittest

from pecup.cache import AcademicCaches, InMemoryCacheBackend


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class AcademicCachesTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.backend = InMemoryCacheBackend(clock=self.clock)
        self.caches = AcademicCaches.create(
            self.backend,
            profile_ttl=60,
            static_ttl=600,
            subjects_ttl=300,
            dynamic_ttl=30,
            clock=self.clock,
        )

    def test_profile_keeps_only_essential_fields(self):
        self.caches.profile.set(
            "Student@Example.com",
            {"id": "p1", "name": "Stu", "email": "student@example.com", "secret": "x"},
        )
        cached = self.caches.profile.get("student@example.com")
        self.assertEqual(cached["id"], "p1")
        self.assertNotIn("secret", cached)

    def test_profile_expires_after_ttl(self):
        self.caches.profile.set("a@example.com", {"id": "p1"})
        self.clock.advance(59)
        self.assertIsNotNone(self.caches.profile.get("a@example.com"))
        self.clock.advance(2)
        self.assertIsNone(self.caches.profile.get("a@example.com"))

    def test_profile_with_mismatched_email_is_discarded(self):
        now_ms = int(self.clock() * 1000)
        envelope = {
            "data": {"id": "p1"},
            "timestamp": now_ms,
            "expiresAt": now_ms + 60_000,
            "email": "someone-else@example.com",
        }
        self.backend.set("profile:a@example.com", json.dumps(envelope), 60)
        self.assertIsNone(self.caches.profile.get("a@example.com"))
        self.assertIsNone(self.backend.get("profile:a@example.com"))

    def test_corrupt_entry_is_cleared(self):
        self.backend.set("static_data", "{not json", 60)
        self.assertIsNone(self.caches.static.get())
        self.assertIsNone(self.backend.get("static_data"))

    def test_subjects_are_scoped_by_context(self):
        self.caches.subjects.set("CSE", 2, 1, [{"code": "CS201"}])
        self.assertEqual(self.caches.subjects.get("CSE", 2, 1), [{"code": "CS201"}])
        self.assertIsNone(self.caches.subjects.get("CSE", 2, 2))
        self.assertIsNone(self.caches.subjects.get("ECE", 2, 1))

    def test_subjects_with_wrong_context_are_discarded(self):
        self.caches.subjects.set("CSE", 2, 1, [{"code": "CS201"}])
        raw = json.loads(self.backend.get("subjects:CSE:2:1"))
        raw["context"]["semester"] = 2
        self.backend.set("subjects:CSE:2:1", json.dumps(raw), 300)
        self.assertIsNone(self.caches.subjects.get("CSE", 2, 1))

    def test_clear_for_context(self):
        self.caches.subjects.set("CSE", 2, 1, [{"code": "CS201"}])
        self.caches.subjects.set("CSE", 2, 2, [{"code": "CS211"}])
        self.caches.subjects.clear_for_context("CSE", 2, 1)
        self.assertIsNone(self.caches.subjects.get("CSE", 2, 1))
        self.assertIsNotNone(self.caches.subjects.get("CSE", 2, 2))

    def test_dynamic_defaults_to_all_key(self):
        self.caches.dynamic.set(None, None, {"exams": []})
        self.assertIsNotNone(self.backend.get("dynamic_data:all:all"))
        self.clock.advance(31)
        self.assertIsNone(self.caches.dynamic.get(None, None))

    def test_semester_change_clears_profiles_and_subjects_only(self):
        self.caches.profile.set("a@example.com", {"id": "p1"})
        self.caches.subjects.set("CSE", 2, 1, [])
        self.caches.static.set({"branches": []})
        self.caches.dynamic.set("CSE", 2, {"exams": []})

        self.caches.invalidate_semester_change()

        self.assertIsNone(self.caches.profile.get("a@example.com"))
        self.assertIsNone(self.caches.subjects.get("CSE", 2, 1))
        self.assertEqual(self.caches.static.get(), {"branches": []})
        self.assertEqual(self.caches.dynamic.get("CSE", 2), {"exams": []})

    def test_clear_all(self):
        self.caches.profile.set("a@example.com", {"id": "p1"})
        self.caches.static.set({"branches": []})
        self.caches.dynamic.set("CSE", 2, {"exams": []})
        self.caches.clear_all()
        self.assertEqual(self.backend.entries, {})


if __name__ == "__main__":
    unittest.main()
