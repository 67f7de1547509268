import unittest

from support import TEST_SECRET, add_profile, make_client, make_settings, reset_backends, seed_academics

from pecup.auth import create_session_token, decode_session_token
from pecup.dependencies import get_db_client
from pecup.files import (
    RateLimiter,
    create_file_token,
    release_resource_file,
    try_parse_drive_id_from_url,
    try_parse_storage_path_from_url,
    verify_file_token,
)
from pecup.storage import InMemoryStorageClient


class SessionTokenTests(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()

    def test_round_trip_lowercases_email(self):
        token = create_session_token("Stu@Example.com", self.settings)
        self.assertEqual(decode_session_token(token, self.settings), "stu@example.com")

    def test_wrong_secret_or_expired(self):
        token = create_session_token("stu@example.com", self.settings)
        other = make_settings(auth_secret="another-secret")
        self.assertIsNone(decode_session_token(token, other))
        expired = create_session_token("stu@example.com", self.settings, expires_in=-10)
        self.assertIsNone(decode_session_token(expired, self.settings))

    def test_bearer_token_identifies_caller(self):
        reset_backends()
        db = get_db_client()
        add_profile(db, seed_academics(db), "stu@example.com")
        client = make_client(settings=make_settings(trust_email_header=False))
        token = create_session_token("stu@example.com", make_settings())

        response = client.get("/api/profile", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["profile"]["email"], "stu@example.com")

        # Without trust the header is ignored.
        ignored = client.get("/api/profile", headers={"X-User-Email": "stu@example.com"})
        self.assertEqual(ignored.status_code, 401)


class FileHelperTests(unittest.TestCase):
    def test_parse_urls(self):
        self.assertEqual(
            try_parse_drive_id_from_url("https://drive.google.com/file/d/1AbC_d-9/view?usp=sharing"),
            "1AbC_d-9",
        )
        self.assertIsNone(try_parse_drive_id_from_url("https://example.org/file.pdf"))
        self.assertEqual(
            try_parse_storage_path_from_url("https://x.supabase.co/storage/v1/object/public/resources/a/b.pdf"),
            ("resources", "a/b.pdf"),
        )
        self.assertIsNone(try_parse_storage_path_from_url(None))

    def test_file_token(self):
        settings = make_settings()
        token, expires_at = create_file_token("r1", "stu@example.com", settings, now=1_000)
        self.assertEqual(expires_at, 1_000 + settings.secure_url_ttl_seconds)
        # Issued long ago, so verification rejects it as expired.
        self.assertIsNone(verify_file_token(token, settings))

        fresh, _ = create_file_token("r1", "stu@example.com", settings)
        claims = verify_file_token(fresh, settings)
        self.assertEqual((claims["rid"], claims["sub"]), ("r1", "stu@example.com"))
        self.assertIsNone(verify_file_token(fresh, make_settings(auth_secret=TEST_SECRET + "x")))

    def test_release_resource_file(self):
        storage = InMemoryStorageClient()
        storage.upload_bytes("a.pdf", b"%PDF-", "application/pdf")
        self.assertTrue(release_resource_file(storage, storage.public_url("a.pdf")))
        self.assertEqual(storage.stored_objects, {})
        self.assertFalse(release_resource_file(storage, storage.public_url("a.pdf")))
        self.assertFalse(release_resource_file(storage, None))
        self.assertFalse(release_resource_file(storage, "https://drive.google.com/file/d/abc/view"))
        self.assertFalse(
            release_resource_file(storage, "https://example.test/storage/v1/object/public/other/a.pdf")
        )
        self.assertTrue(release_resource_file(storage, "https://example.org/notes.pdf"))

    def test_rate_limiter_window(self):
        now = [0.0]
        limiter = RateLimiter(limit=2, window_seconds=60, clock=lambda: now[0])
        self.assertTrue(limiter.allow("a"))
        self.assertTrue(limiter.allow("a"))
        self.assertFalse(limiter.allow("a"))
        self.assertTrue(limiter.allow("b"))
        now[0] = 60.0
        self.assertTrue(limiter.allow("a"))

    def test_rate_limiter_drops_idle_callers(self):
        now = [0.0]
        limiter = RateLimiter(limit=1, window_seconds=60, clock=lambda: now[0])
        for number in range(5):
            limiter.allow(f"user{number}@example.com")
        self.assertEqual(len(limiter.hits), 5)
        now[0] = 120.0
        self.assertTrue(limiter.allow("late@example.com"))
        self.assertEqual(list(limiter.hits), ["late@example.com"])


if __name__ == "__main__":
    unittest.main()
