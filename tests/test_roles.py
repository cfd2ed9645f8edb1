"""Tests for role-name normalization and admin classification."""

import pytest

from backoffice.service.roles import (
    ADMIN_PERMISSIONS,
    MODULES,
    is_admin_role,
    normalize_role,
    normalize_roles,
)


class TestNormalizeRole:
    """Role strings compare case- and whitespace-insensitively."""

    @pytest.mark.parametrize("raw", ["admin", "Admin", "ADMIN", " Admin ", "\tadmin\n"])
    def test_admin_spellings_collapse(self, raw):
        assert normalize_role(raw) == "ADMIN"
        assert is_admin_role(raw)

    def test_inner_whitespace_becomes_underscore(self):
        assert normalize_role("Super Admin") == "SUPER_ADMIN"
        assert normalize_role("  super   admin ") == "SUPER_ADMIN"
        assert normalize_role("HR Manager") == "HR_MANAGER"

    def test_super_admin_is_admin_equivalent(self):
        assert is_admin_role("super admin")
        assert is_admin_role("SUPER_ADMIN")

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_values_normalize_to_empty(self, raw):
        assert normalize_role(raw) == ""
        assert not is_admin_role(raw)

    def test_non_admin_roles(self):
        assert not is_admin_role("Employee")
        assert not is_admin_role("administrator")
        assert not is_admin_role("Manager")

    def test_normalize_roles_drops_blanks(self):
        assert normalize_roles(["admin", " ", None, "Hr"]) == frozenset({"ADMIN", "HR"})


class TestAdminPermissions:
    def test_every_module_has_full_action_set(self):
        for module in MODULES:
            assert "view" in ADMIN_PERMISSIONS[module]
            assert "delete" in ADMIN_PERMISSIONS[module]
        assert ADMIN_PERMISSIONS["all"] == ("all",)
