import unittest

from support import PDF_BYTES, add_admin, add_profile, add_representative, as_user, make_client, make_settings, reset_backends, seed_academics

from pecup.db import query
from pecup.dependencies import get_db_client, get_secure_url_limiter, get_storage_client
from pecup.files import RateLimiter


class SecureFileTests(unittest.TestCase):
    def setUp(self):
        reset_backends()
        self.client = make_client()
        self.db = get_db_client()
        self.storage = get_storage_client()
        self.seed = seed_academics(self.db)
        add_profile(self.db, self.seed, "stu@example.com")
        add_profile(self.db, self.seed, "other@example.com", branch=self.seed.ece)

        self.storage.upload_bytes("notes/unit1.pdf", PDF_BYTES, "application/pdf")
        self.resource = self.db.insert(
            "resources",
            {
                "name": "Unit 1",
                "url": self.storage.public_url("notes/unit1.pdf"),
                "file_type": "application/pdf",
                "branch_id": self.seed.cse["id"],
                "year_id": self.seed.year_2024["id"],
                "semester_id": self.seed.sem_2024_1["id"],
            },
        )

    def _secure_url(self, email, resource_id=None):
        return self.client.get(
            f"/api/resources/{resource_id or self.resource['id']}/secure-url",
            headers=as_user(email),
        )

    def test_secure_url_then_file(self):
        response = self._secure_url("stu@example.com")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["cache-control"], "no-store, max-age=0, must-revalidate")
        payload = response.json()
        self.assertTrue(payload["secureUrl"].startswith("/api/secure-file/"))
        self.assertEqual(payload["expiresInSeconds"], 3600)

        file_response = self.client.get(payload["secureUrl"], headers=as_user("stu@example.com"))
        self.assertEqual(file_response.status_code, 200)
        self.assertEqual(file_response.content, PDF_BYTES)
        self.assertEqual(file_response.headers["content-type"], "application/pdf")
        self.assertEqual(file_response.headers["x-content-type-options"], "nosniff")
        self.assertTrue(file_response.headers["content-disposition"].startswith("inline"))

    def test_requires_session(self):
        response = self.client.get(f"/api/resources/{self.resource['id']}/secure-url")
        self.assertEqual(response.status_code, 401)

    def test_other_branch_is_denied(self):
        response = self._secure_url("other@example.com")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["message"], "Access denied or resource not found")

    def test_unknown_or_deleted_resource_is_denied(self):
        self.assertEqual(self._secure_url("stu@example.com", "missing").status_code, 403)
        deleted = self.db.insert("resources", {"name": "Gone", "deleted_at": "2026-01-01T00:00:00Z"})
        add_admin(self.db, "admin@example.com")
        add_profile(self.db, self.seed, "admin@example.com")
        self.assertEqual(self._secure_url("admin@example.com", deleted["id"]).status_code, 403)

    def test_user_without_profile_is_denied(self):
        self.assertEqual(self._secure_url("ghost@example.com").status_code, 403)

    def test_token_cannot_be_reused_by_other_branch(self):
        secure_url = self._secure_url("stu@example.com").json()["secureUrl"]
        response = self.client.get(secure_url, headers=as_user("other@example.com"))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["message"], "Access denied")

    def test_representative_in_scope_can_fetch(self):
        add_representative(self.db, self.seed, "rep@example.com")
        self.assertEqual(self._secure_url("rep@example.com").status_code, 200)

    def test_invalid_token(self):
        response = self.client.get("/api/secure-file/not-a-token", headers=as_user("stu@example.com"))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["message"], "Invalid or expired token")

    def test_missing_object_is_not_found(self):
        secure_url = self._secure_url("stu@example.com").json()["secureUrl"]
        self.storage.delete("notes/unit1.pdf")
        response = self.client.get(secure_url, headers=as_user("stu@example.com"))
        self.assertEqual(response.status_code, 404)

    def test_token_stops_working_after_soft_delete(self):
        secure_url = self._secure_url("stu@example.com").json()["secureUrl"]
        self.db.update(
            query("resources").eq("id", self.resource["id"]), {"deleted_at": "2026-01-01T00:00:00Z"}
        )
        response = self.client.get(secure_url, headers=as_user("stu@example.com"))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["message"], "File not available")

    def test_external_link_is_not_served(self):
        external = self.db.insert(
            "resources",
            {
                "name": "Drive",
                "url": "https://drive.google.com/file/d/abc123/view",
                "branch_id": self.seed.cse["id"],
                "year_id": self.seed.year_2024["id"],
                "semester_id": self.seed.sem_2024_1["id"],
            },
        )
        secure_url = self._secure_url("stu@example.com", external["id"]).json()["secureUrl"]
        self.assertEqual(self.client.get(secure_url, headers=as_user("stu@example.com")).status_code, 404)

    def test_rate_limited(self):
        limiter = RateLimiter(limit=1, window_seconds=60)
        client = make_client(overrides={get_secure_url_limiter: lambda: limiter})
        headers = as_user("stu@example.com")
        first = client.get(f"/api/resources/{self.resource['id']}/secure-url", headers=headers)
        self.assertEqual(first.status_code, 200)
        second = client.get(f"/api/resources/{self.resource['id']}/secure-url", headers=headers)
        self.assertEqual(second.status_code, 429)

    def test_unconfigured_secret(self):
        client = make_client(settings=make_settings(auth_secret=None))
        response = client.get(f"/api/resources/{self.resource['id']}/secure-url", headers=as_user("stu@example.com"))
        self.assertEqual(response.status_code, 500)


if __name__ == "__main__":
    unittest.main()
