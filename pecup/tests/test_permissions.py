import unittest

from support import add_admin, add_profile, add_representative, make_settings, seed_academics

from pecup.db import InMemoryDbClient
from pecup.errors import Forbidden, Unauthorized
from pecup.permissions import (
    can_access_resource,
    can_manage_resources,
    get_user_permissions,
    load_user_context,
    require_admin,
    require_permission,
    resource_filter,
)
from pecup.types import AdminRole


class UserContextTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.seed = seed_academics(self.db)

    def test_missing_profile_has_no_context(self):
        self.assertIsNone(load_user_context(self.db, "ghost@example.com"))
        self.assertIsNone(load_user_context(self.db, None))

    def test_student_context(self):
        add_profile(self.db, self.seed, "stu@example.com")
        ctx = load_user_context(self.db, "STU@example.com")
        self.assertEqual(ctx.role, "student")
        self.assertEqual(ctx.branch, "CSE")
        self.assertEqual(ctx.year, 2024)
        permissions = get_user_permissions(ctx)
        self.assertTrue(permissions["resources"]["canRead"])
        self.assertFalse(permissions["resources"]["canWrite"])
        self.assertFalse(permissions["canPromoteSemester"])
        with self.assertRaises(Forbidden):
            require_permission(ctx, "write", "resources")

    def test_admin_row_overrides_profile_role(self):
        add_profile(self.db, self.seed, "boss@example.com")
        add_admin(self.db, "boss@example.com", "superadmin")
        ctx = load_user_context(self.db, "boss@example.com")
        self.assertTrue(ctx.is_admin)
        self.assertTrue(can_manage_resources(ctx, self.seed.ece["id"], self.seed.year_2023["id"]))

    def test_representative_scope(self):
        add_representative(self.db, self.seed, "rep@example.com")
        ctx = load_user_context(self.db, "rep@example.com")
        self.assertTrue(ctx.is_representative)
        self.assertEqual(ctx.representative_assignments[0].branch_code, "CSE")
        self.assertEqual(ctx.representative_assignments[0].admission_year, 2024)

        cse, year = self.seed.cse["id"], self.seed.year_2024["id"]
        self.assertTrue(can_manage_resources(ctx, cse, year))
        self.assertFalse(can_manage_resources(ctx, self.seed.ece["id"], year))
        require_permission(ctx, "write", "resources", cse, year)
        with self.assertRaises(Forbidden):
            require_permission(ctx, "write", "resources", self.seed.ece["id"], year)
        with self.assertRaises(Forbidden):
            require_permission(ctx, "read", "profiles")

        permissions = get_user_permissions(ctx)
        self.assertEqual(permissions["scopeRestrictions"]["branchIds"], [cse])

    def test_require_permission_without_context(self):
        with self.assertRaises(Unauthorized):
            require_permission(None, "read", "resources")

    def test_student_resource_access_requires_matching_context(self):
        add_profile(self.db, self.seed, "stu@example.com")
        ctx = load_user_context(self.db, "stu@example.com")
        own = {
            "branch_id": self.seed.cse["id"],
            "year_id": self.seed.year_2024["id"],
            "semester_id": self.seed.sem_2024_1["id"],
        }
        self.assertTrue(can_access_resource(ctx, own))
        self.assertFalse(can_access_resource(ctx, {**own, "semester_id": self.seed.sem_2024_2["id"]}))

    def test_resource_filter_by_role(self):
        add_profile(self.db, self.seed, "stu@example.com")
        add_representative(self.db, self.seed, "rep@example.com")
        add_profile(self.db, self.seed, "boss@example.com")
        add_admin(self.db, "boss@example.com")

        student = resource_filter(load_user_context(self.db, "stu@example.com"))
        self.assertEqual(student["semester_ids"], [self.seed.sem_2024_1["id"]])
        rep = resource_filter(load_user_context(self.db, "rep@example.com"))
        self.assertEqual(rep, {"branch_ids": [self.seed.cse["id"]], "year_ids": [self.seed.year_2024["id"]]})
        self.assertEqual(resource_filter(load_user_context(self.db, "boss@example.com")), {})


class RequireAdminTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.seed = seed_academics(self.db)
        self.settings = make_settings()

    def test_no_email_is_unauthorized(self):
        with self.assertRaises(Unauthorized):
            require_admin(self.db, None, self.settings)

    def test_non_admin_is_forbidden(self):
        add_profile(self.db, self.seed, "stu@example.com")
        with self.assertRaises(Forbidden):
            require_admin(self.db, "stu@example.com", self.settings)

    def test_superadmin_required(self):
        add_admin(self.db, "admin@example.com", "admin")
        self.assertEqual(require_admin(self.db, "Admin@Example.com", self.settings).role, "admin")
        with self.assertRaises(Forbidden):
            require_admin(self.db, "admin@example.com", self.settings, min_role=AdminRole.SUPERADMIN)

    def test_profile_role_fallback(self):
        add_profile(self.db, self.seed, "legacy@example.com", role="admin")
        self.assertEqual(require_admin(self.db, "legacy@example.com", self.settings).role, "admin")

    def test_development_bypass(self):
        dev = make_settings(app_env="development", authorized_emails="dev@example.com")
        ctx = require_admin(self.db, "dev@example.com", dev, min_role=AdminRole.SUPERADMIN)
        self.assertEqual(ctx.role, "superadmin")
        with self.assertRaises(Forbidden):
            require_admin(self.db, "dev@example.com", self.settings)


if __name__ == "__main__":
    unittest.main()
