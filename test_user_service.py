# test_user_service.py
"""
Tests for user access management, caller resolution and settings.
Run with: python -m pytest test_user_service.py -v
"""

import tempfile
import unittest
from pathlib import Path

from database import MaintenanceRepository, get_connection, initialize_db
from domain.models import AccessLevel, Role, UserPermissions, UserProfile
from permission_service import DEFAULT_PERMISSIONS, PermissionDenied
from services import settings_service, user_service
from services.identity import Caller, get_current_user_id, resolve_caller

MANAGER_PERMS = UserPermissions(user_management=AccessLevel.EDIT, settings=AccessLevel.EDIT)


class UserServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        path = Path(self.tmpdir.name) / "maintenance.db"
        self.repo = MaintenanceRepository(initialize_db(get_connection(path), path))
        self.repo.upsert_profile(UserProfile("root", "Root", Role.ADMIN, True, MANAGER_PERMS))
        self.repo.upsert_profile(UserProfile("mgr", "Manager", Role.SUPERVISOR, False, MANAGER_PERMS))
        self.repo.upsert_profile(UserProfile("tech", "Tech", Role.USER, False, DEFAULT_PERMISSIONS))

    def tearDown(self):
        self.repo.conn.close()
        self.tmpdir.cleanup()


class TestResolveCaller(UserServiceTestCase):
    def test_profile_permissions(self):
        caller = resolve_caller(self.repo, "mgr")
        self.assertEqual(caller.role, Role.SUPERVISOR)
        self.assertEqual(caller.permissions, MANAGER_PERMS)

    def test_missing_profile_gets_defaults(self):
        caller = resolve_caller(self.repo, "stranger")
        self.assertEqual(caller.permissions, DEFAULT_PERMISSIONS)
        self.assertFalse(caller.is_super_admin)

    def test_changes_visible_on_next_resolve(self):
        before = resolve_caller(self.repo, "tech")
        user_service.update_user_access(
            self.repo, resolve_caller(self.repo, "mgr"), "tech", "user", {"update_maintenance": "edit"}
        )
        after = resolve_caller(self.repo, "tech")
        self.assertEqual(before.permissions.update_maintenance, AccessLevel.HIDDEN)
        self.assertEqual(after.permissions.update_maintenance, AccessLevel.EDIT)
        self.assertEqual(after.permissions.dashboard, AccessLevel.HIDDEN)

    def test_operator_name(self):
        self.assertEqual(get_current_user_id(None), "local")
        self.assertEqual(get_current_user_id(self.repo), "local")
        self.repo.set_setting("operator_name", "  jdoe ")
        self.assertEqual(get_current_user_id(self.repo), "jdoe")


class TestUserAccess(UserServiceTestCase):
    def test_requires_user_management_edit(self):
        with self.assertRaises(PermissionDenied):
            user_service.update_user_access(self.repo, resolve_caller(self.repo, "tech"), "tech", "admin", {})
        with self.assertRaises(PermissionDenied):
            user_service.list_users(self.repo, resolve_caller(self.repo, "tech"))
        self.assertEqual(len(user_service.list_users(self.repo, resolve_caller(self.repo, "mgr"))), 3)

    def test_unknown_feature_rejected(self):
        with self.assertRaises(ValueError):
            user_service.update_user_access(
                self.repo, resolve_caller(self.repo, "mgr"), "tech", "user", {"reports": "edit"}
            )

    def test_superadmin_protected_from_others(self):
        mgr = resolve_caller(self.repo, "mgr")
        with self.assertRaises(PermissionDenied):
            user_service.update_user_access(self.repo, mgr, "root", "user", {})
        with self.assertRaises(PermissionDenied):
            user_service.delete_user(self.repo, mgr, "root")
        self.assertIsNotNone(self.repo.get_profile("root"))

    def test_superadmin_can_edit_self_but_not_delete_self(self):
        root = resolve_caller(self.repo, "root")
        user_service.update_user_access(self.repo, root, "root", "admin", MANAGER_PERMS)
        with self.assertRaises(PermissionDenied):
            user_service.delete_user(self.repo, root, "root")

    def test_delete_user(self):
        user_service.delete_user(self.repo, resolve_caller(self.repo, "mgr"), "tech")
        self.assertIsNone(self.repo.get_profile("tech"))
        with self.assertRaises(ValueError):
            user_service.delete_user(self.repo, resolve_caller(self.repo, "mgr"), "tech")

    def test_register_profile(self):
        profile = user_service.register_profile(self.repo, "newbie", "New User")
        self.assertEqual(profile.permissions, DEFAULT_PERMISSIONS)
        self.assertEqual(resolve_caller(self.repo, "newbie").role, Role.USER)
        with self.assertRaises(ValueError):
            user_service.register_profile(self.repo, "newbie")


class TestSettings(UserServiceTestCase):
    def test_horizon_days(self):
        self.assertEqual(settings_service.get_horizon_days(self.repo), 0)
        self.assertEqual(settings_service.get_horizon_days(self.repo, default=7), 7)
        settings_service.set_horizon_days(self.repo, resolve_caller(self.repo, "mgr"), "30")
        self.assertEqual(settings_service.get_horizon_days(self.repo, default=7), 30)

    def test_horizon_validation(self):
        mgr = resolve_caller(self.repo, "mgr")
        for bad in ("-1", "soon", None):
            with self.assertRaises(ValueError):
                settings_service.set_horizon_days(self.repo, mgr, bad)

    def test_settings_need_edit(self):
        with self.assertRaises(PermissionDenied):
            settings_service.set_setting(self.repo, Caller("nobody"), "operator_name", "x")


if __name__ == "__main__":
    unittest.main()
