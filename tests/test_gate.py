"""Tests for role and permission gates."""

import pytest

from backoffice.service.errors import AuthenticationError, ForbiddenError
from backoffice.service.gate import check_permissions, check_roles
from backoffice.service.permissions import PermissionResolver, permissions_from_document
from backoffice.storage.models import Principal, ResolvedPrincipal


def _resolved(role, document=None):
    if document is None:
        principal = Principal.new(email="gate@example.com", password_hash="x", display_name="G", role=role)
        permissions = PermissionResolver().resolve(principal, None)
    else:
        permissions = permissions_from_document(document)
    return ResolvedPrincipal(
        principal_id="p-1",
        email="gate@example.com",
        role=role,
        display_name="G",
        permissions=permissions,
    )


class TestCheckRoles:
    def test_admin_passes_admin_only_gate(self):
        check_roles(_resolved("Admin"), ["ADMIN", "SUPER_ADMIN"])

    def test_super_admin_passes_admin_gate(self):
        check_roles(_resolved("Super Admin"), ["admin"])

    @pytest.mark.parametrize("role", ["hr", "HR", " Hr "])
    def test_comparison_ignores_case_and_padding(self, role):
        check_roles(_resolved(role), ["HR"])

    def test_empty_allow_list_passes(self):
        check_roles(None, [])

    def test_missing_principal_is_unauthenticated(self):
        with pytest.raises(AuthenticationError):
            check_roles(None, ["ADMIN"])

    def test_other_role_is_forbidden(self):
        with pytest.raises(ForbiddenError) as excinfo:
            check_roles(_resolved("Employee"), ["ADMIN", "SUPER_ADMIN"])
        assert excinfo.value.status_code == 403
        assert excinfo.value.detail == {"allowed_roles": ["ADMIN", "SUPER_ADMIN"]}


class TestCheckPermissions:
    def test_all_requirements_must_hold(self):
        principal = _resolved("Supervisor", {"task": ["view", "edit"]})
        check_permissions(principal, ["task:view", "task:edit"])
        with pytest.raises(ForbiddenError) as excinfo:
            check_permissions(principal, ["task:view", "task:delete"])
        assert excinfo.value.detail == {"required": "task:delete"}

    def test_implied_view_through_gate(self):
        check_permissions(_resolved("Supervisor", {"project": ["edit"]}), ["project:view"])

    def test_admin_passes_everything(self):
        check_permissions(_resolved("admin"), ["rbac:delete", "users:create", "reports:export"])

    def test_no_requirements_passes(self):
        check_permissions(None, [])

    def test_missing_principal_is_unauthenticated(self):
        with pytest.raises(AuthenticationError):
            check_permissions(None, ["task:view"])
