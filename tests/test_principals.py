"""Tests for team-member and role lifecycle guards."""

import asyncio

import pytest

from backoffice.service.auth import AuthService
from backoffice.service.errors import BadRequestError, ConflictError, NotFoundError, ValidationError
from backoffice.service.principals import PrincipalService, RoleService
from backoffice.service.roles import ADMIN_PERMISSIONS
from backoffice.storage.memory import MemoryStore
from backoffice.storage.models import PRINCIPAL_STATUS_ACTIVE, PRINCIPAL_STATUS_INACTIVE


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(memory_store, None, settings)


@pytest.fixture
def principals(memory_store, auth_service):
    return PrincipalService(memory_store, auth_service)


@pytest.fixture
def roles(memory_store):
    return RoleService(memory_store)


@pytest.fixture
def admin(auth_service):
    return asyncio.run(auth_service.setup_admin("root@example.com", "FirstAdmin99", "Root"))


def _member(principals, email="member@example.com", **kwargs):
    return principals.create(
        email=email, password="MemberPass1", display_name="jane doe", **kwargs
    )


class TestPrincipalLifecycle:
    def test_create_normalizes_fields(self, principals, memory_store):
        member = _member(principals, role="support agent")
        assert member.display_name == "Jane Doe"
        assert member.role == "Support Agent"
        assert member.status == PRINCIPAL_STATUS_ACTIVE
        assert [e.type for e in memory_store.list_activity()] == ["CREATE"]

    def test_create_takes_custom_role_name(self, principals, roles):
        role = roles.create(name="project head", permissions={"project": ["view"]})
        member = _member(principals, role_id=role.id)
        assert member.role == "Project Head"
        assert member.role_id == role.id

    def test_create_with_unknown_role_id(self, principals):
        with pytest.raises(NotFoundError):
            _member(principals, role_id="missing")

    @pytest.mark.parametrize("role", ["admin", "Super Admin"])
    def test_admin_cannot_be_created(self, principals, role):
        with pytest.raises(BadRequestError) as excinfo:
            _member(principals, role=role)
        assert excinfo.value.message == "Admin role can only be created via system setup"

    def test_duplicate_email_conflicts(self, principals):
        _member(principals)
        with pytest.raises(ConflictError):
            _member(principals, email="MEMBER@example.com")

    def test_unknown_login_method(self, principals):
        with pytest.raises(ValidationError):
            _member(principals, login_method="Carrier Pigeon")

    def test_update_profile(self, principals):
        member = _member(principals)
        updated = principals.update(
            member.id, {"display_name": "john smith", "allowed_ips": ["10.0.0.1"]}
        )
        assert updated.display_name == "John Smith"
        assert updated.allowed_ips == ["10.0.0.1"]

    def test_update_cannot_promote_to_admin(self, principals):
        member = _member(principals)
        with pytest.raises(BadRequestError) as excinfo:
            principals.update(member.id, {"role": "ADMIN"})
        assert excinfo.value.message == "Admin role can only be assigned via system setup"

    def test_admin_role_is_fixed(self, principals, admin):
        with pytest.raises(BadRequestError) as excinfo:
            principals.update(admin.id, {"role": "Employee"})
        assert excinfo.value.message == "Admin role cannot be modified"

    def test_admin_profile_can_change(self, principals, admin):
        updated = principals.update(admin.id, {"display_name": "the root"})
        assert updated.display_name == "The Root"
        assert updated.role == "Admin"

    async def test_deactivation_ends_sessions(self, principals, auth_service):
        member = _member(principals)
        login = await auth_service.login("member@example.com", "MemberPass1")

        updated = await principals.change_status(member.id, PRINCIPAL_STATUS_INACTIVE)
        assert updated.status == PRINCIPAL_STATUS_INACTIVE
        assert await auth_service.validate_session(login.session.id) is None

    async def test_admin_cannot_be_deactivated(self, principals, admin):
        with pytest.raises(BadRequestError) as excinfo:
            await principals.change_status(admin.id, PRINCIPAL_STATUS_INACTIVE)
        assert excinfo.value.message == "System admin cannot be deactivated"

    async def test_unknown_status(self, principals):
        member = _member(principals)
        with pytest.raises(ValidationError):
            await principals.change_status(member.id, "Suspended")

    def test_admin_cannot_be_deleted(self, principals, admin):
        with pytest.raises(BadRequestError) as excinfo:
            principals.delete(admin.id)
        assert excinfo.value.message == "System admin cannot be deleted"

    def test_delete_blocked_by_dependents(self, principals, memory_store):
        member = _member(principals)
        memory_store.record_dependent(member.id, "created_tasks", "task-1")
        memory_store.record_dependent(member.id, "created_tasks", "task-2")
        memory_store.record_dependent(member.id, "group_memberships", "group-1")

        with pytest.raises(BadRequestError) as excinfo:
            principals.delete(member.id)
        assert excinfo.value.message == (
            "Cannot delete Team Member because they have: 2 created tasks, "
            "1 group memberships. Please reassign or remove them first."
        )
        assert excinfo.value.detail == {
            "dependents": {"created_tasks": 2, "group_memberships": 1}
        }

    def test_delete_after_dependents_released(self, principals, memory_store):
        member = _member(principals)
        memory_store.record_dependent(member.id, "assigned_tasks", "task-1")
        memory_store.release_dependent(member.id, "assigned_tasks", "task-1")

        principals.delete(member.id)
        with pytest.raises(NotFoundError):
            principals.get(member.id)


class TestRoleLifecycle:
    def test_create_and_get(self, roles, memory_store):
        role = roles.create(name=" Auditor ", permissions={"task": ["view"]})
        assert role.name == "Auditor"
        assert roles.get(role.id).permissions == {"task": ["view"]}
        assert memory_store.list_activity()[0].type == "ROLE_CREATE"

    def test_missing_permissions_become_empty_document(self, roles):
        assert roles.create(name="Guest").permissions == {}

    def test_invalid_document_is_rejected(self, roles):
        with pytest.raises(ValidationError):
            roles.create(name="Broken", permissions={"task": "view"})

    def test_duplicate_name_conflicts(self, roles):
        roles.create(name="Support")
        with pytest.raises(ConflictError) as excinfo:
            roles.create(name="support")
        assert excinfo.value.message == "Role already exists"

    def test_admin_role_cannot_be_created(self, roles):
        with pytest.raises(BadRequestError):
            roles.create(name="super admin")

    def test_admin_role_is_presented_with_full_access(self, roles, admin, memory_store):
        memory_store.update_role(admin.role_id, permissions={"task": ["view"]})
        presented = roles.get(admin.role_id)
        assert presented.permissions == {
            module: list(actions) for module, actions in ADMIN_PERMISSIONS.items()
        }
        assert memory_store.get_role(admin.role_id).permissions == {"task": ["view"]}

    def test_admin_role_cannot_be_changed_or_deleted(self, roles, admin):
        with pytest.raises(BadRequestError) as excinfo:
            roles.update(admin.role_id, description="tweaked")
        assert excinfo.value.message == "Admin role cannot be modified"
        with pytest.raises(BadRequestError) as excinfo:
            roles.delete(admin.role_id)
        assert excinfo.value.message == "Admin role cannot be deleted"

    def test_rename_to_admin_is_rejected(self, roles):
        role = roles.create(name="Support")
        with pytest.raises(BadRequestError):
            roles.update(role.id, name="Admin")

    def test_list_is_sorted_by_priority(self, roles, admin):
        for name in ("Guest", "Zeta Team", "Support", "HR"):
            roles.create(name=name)
        assert [r.name for r in roles.list()] == ["Admin", "HR", "Support", "Guest", "Zeta Team"]

    def test_delete_unlinks_members(self, roles, principals, memory_store):
        role = roles.create(name="Support")
        member = _member(principals, role_id=role.id)
        roles.delete(role.id)
        assert memory_store.get_principal(member.id).role_id is None
        with pytest.raises(NotFoundError):
            roles.get(role.id)
