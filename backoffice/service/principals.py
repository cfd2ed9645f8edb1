from __future__ import annotations

import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

from backoffice.logging import get_logger
from backoffice.service import activity
from backoffice.service.auth import AuthService
from backoffice.service.errors import BadRequestError, ConflictError, NotFoundError, ValidationError
from backoffice.service.permissions import ParseFailed, parse_permissions_document
from backoffice.service.roles import ADMIN_PERMISSIONS, is_admin_role
from backoffice.storage.errors import ConstraintViolation
from backoffice.storage.models import (
    LOGIN_METHODS,
    PRINCIPAL_STATUS_INACTIVE,
    PRINCIPAL_STATUSES,
    CustomRole,
    Principal,
)

logger = get_logger(__name__)

ROLE_SORT_PRIORITY: Dict[str, int] = {
    "Super Admin": 1,
    "Admin": 2,
    "HR Manager": 3,
    "Hr Manager": 3,
    "HR": 4,
    "Recruiter": 5,
    "Project Head": 6,
    "Supervisor": 7,
    "Support": 8,
    "Auditor": 9,
    "Staff / Employee": 10,
    "User": 11,
    "Guest": 12,
}

_DEPENDENT_LABELS = {
    "created_tasks": "created tasks",
    "assigned_tasks": "assigned tasks",
    "working_tasks": "working tasks",
    "group_memberships": "group memberships",
}


def title_case(value: str) -> str:
    return " ".join(word.capitalize() for word in value.split())


def _is_protected(principal: Principal) -> bool:
    return principal.is_system_user or is_admin_role(principal.role)


class PrincipalService:
    """Team-member lifecycle with the administrative-account guards."""

    def __init__(self, store: Any, auth: AuthService) -> None:
        self.store = store
        self.auth = auth
        self.logger = logger

    def get(self, principal_id: str) -> Principal:
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("team member not found")
        return principal

    def list(
        self, *, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Principal]:
        if status and status not in PRINCIPAL_STATUSES:
            raise ValidationError("unknown status", detail={"field": "status"})
        return self.store.list_principals(status=status, limit=limit, offset=offset)

    def _role_name_for(self, role: Optional[str], role_id: Optional[str]) -> str:
        role_name = title_case(role or "Employee")
        if role_id:
            custom_role = self.store.get_role(role_id)
            if custom_role is None:
                raise NotFoundError("role not found", detail={"role_id": role_id})
            role_name = title_case(custom_role.name)
        return role_name

    @staticmethod
    def _check_login_method(login_method: Optional[str]) -> None:
        if login_method is not None and login_method not in LOGIN_METHODS:
            raise ValidationError("unknown login method", detail={"field": "login_method"})

    def create(
        self,
        *,
        email: str,
        password: str,
        display_name: str,
        role: Optional[str] = None,
        role_id: Optional[str] = None,
        status: Optional[str] = None,
        login_method: Optional[str] = None,
        allowed_ips: Optional[List[str]] = None,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Principal:
        role_name = self._role_name_for(role, role_id)
        if is_admin_role(role_name):
            raise BadRequestError("Admin role can only be created via system setup")
        self._check_login_method(login_method)
        if status is not None and status not in PRINCIPAL_STATUSES:
            raise ValidationError("unknown status", detail={"field": "status"})
        principal = Principal.new(
            email=email,
            password_hash=self.auth.hash_password(password),
            display_name=title_case(display_name),
            role=role_name,
            role_id=role_id,
        )
        if status:
            principal.status = status
        if login_method:
            principal.login_method = login_method
        principal.allowed_ips = list(allowed_ips or [])
        try:
            created = self.store.create_principal(principal)
        except ConstraintViolation as exc:
            raise ConflictError.from_constraint(exc)
        activity.record_activity(
            self.store, actor_id, activity.CREATE, f"Team member {created.email} created", ip_address
        )
        return created

    def update(
        self,
        principal_id: str,
        changes: Dict[str, Any],
        *,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Principal:
        existing = self.get(principal_id)
        protected = _is_protected(existing)
        role_change = bool(changes.get("role") or changes.get("role_id"))
        if protected and role_change:
            raise BadRequestError("Admin role cannot be modified")

        data: Dict[str, Any] = {}
        if changes.get("email"):
            data["email"] = changes["email"].strip().lower()
        if changes.get("display_name"):
            data["display_name"] = title_case(changes["display_name"])
        if changes.get("password"):
            data["password_hash"] = self.auth.hash_password(changes["password"])
        if "login_method" in changes and changes["login_method"] is not None:
            self._check_login_method(changes["login_method"])
            data["login_method"] = changes["login_method"]
        if "allowed_ips" in changes and changes["allowed_ips"] is not None:
            data["allowed_ips"] = list(changes["allowed_ips"])
        if role_change:
            data["role"] = self._role_name_for(changes.get("role"), changes.get("role_id"))
            if changes.get("role_id"):
                data["role_id"] = changes["role_id"]
            if is_admin_role(data["role"]):
                raise BadRequestError("Admin role can only be assigned via system setup")

        try:
            updated = self.store.update_principal(principal_id, **data)
        except ConstraintViolation as exc:
            raise ConflictError.from_constraint(exc)
        if updated is None:
            raise NotFoundError("team member not found")
        activity.record_activity(
            self.store, actor_id, activity.UPDATE, f"Team member {updated.email} updated", ip_address
        )
        return updated

    async def change_status(
        self,
        principal_id: str,
        status: str,
        *,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Principal:
        if status not in PRINCIPAL_STATUSES:
            raise ValidationError("unknown status", detail={"field": "status"})
        existing = self.get(principal_id)
        if _is_protected(existing) and status == PRINCIPAL_STATUS_INACTIVE:
            raise BadRequestError("System admin cannot be deactivated")
        updated = self.store.update_principal(principal_id, status=status)
        if updated is None:
            raise NotFoundError("team member not found")
        if status == PRINCIPAL_STATUS_INACTIVE:
            await self.auth.sessions.invalidate_principal(principal_id)
        activity.record_activity(
            self.store,
            actor_id,
            activity.STATUS_CHANGE,
            f"Team member {updated.email} set to {status}",
            ip_address,
        )
        return updated

    def delete(
        self,
        principal_id: str,
        *,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        existing = self.get(principal_id)
        if _is_protected(existing):
            raise BadRequestError("System admin cannot be deleted")
        counts = self.store.count_dependents(principal_id)
        if counts:
            listed = ", ".join(
                f"{total} {_DEPENDENT_LABELS.get(kind, kind.replace('_', ' '))}"
                for kind, total in counts.items()
            )
            raise BadRequestError(
                f"Cannot delete Team Member because they have: {listed}. "
                "Please reassign or remove them first.",
                detail={"dependents": counts},
            )
        try:
            self.store.delete_principal(principal_id)
        except ConstraintViolation as exc:
            raise BadRequestError.from_constraint(exc)
        activity.record_activity(
            self.store, actor_id, activity.DELETE, f"Team member {existing.email} deleted", ip_address
        )


class RoleService:
    """Custom-role CRUD; the administrative role is fixed to full access."""

    def __init__(self, store: Any) -> None:
        self.store = store
        self.logger = logger

    @staticmethod
    def _present(role: CustomRole) -> CustomRole:
        if is_admin_role(role.name):
            return replace(
                role,
                permissions={module: list(actions) for module, actions in ADMIN_PERMISSIONS.items()},
            )
        return role

    @staticmethod
    def _validated_document(permissions: Any) -> Any:
        if permissions is None:
            return {}
        if isinstance(parse_permissions_document(permissions), ParseFailed):
            raise ValidationError(
                "permissions must map modules to lists of actions",
                detail={"field": "permissions"},
            )
        return permissions

    def list(self) -> List[CustomRole]:
        roles = [self._present(role) for role in self.store.list_roles()]
        return sorted(roles, key=lambda r: (ROLE_SORT_PRIORITY.get(r.name, 100), r.name))

    def get(self, role_id: str) -> CustomRole:
        role = self.store.get_role(role_id)
        if role is None:
            raise NotFoundError("role not found")
        return self._present(role)

    def create(
        self,
        *,
        name: str,
        description: Optional[str] = None,
        permissions: Any = None,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> CustomRole:
        name = (name or "").strip()
        if not name:
            raise ValidationError("role name is required", detail={"field": "name"})
        if is_admin_role(name):
            raise BadRequestError("Admin role can only be created via system setup")
        role = CustomRole(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            permissions=self._validated_document(permissions),
        )
        try:
            created = self.store.create_role(role)
        except ConstraintViolation:
            raise ConflictError("Role already exists", detail={"field": "name"})
        activity.record_activity(
            self.store, actor_id, activity.ROLE_CREATE, f"Role {created.name} created", ip_address
        )
        return created

    def update(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Any = None,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> CustomRole:
        existing = self.get(role_id)
        if is_admin_role(existing.name):
            raise BadRequestError("Admin role cannot be modified")
        changes: Dict[str, Any] = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("role name is required", detail={"field": "name"})
            if is_admin_role(name):
                raise BadRequestError("Admin role can only be created via system setup")
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if permissions is not None:
            changes["permissions"] = self._validated_document(permissions)
        try:
            updated = self.store.update_role(role_id, **changes)
        except ConstraintViolation:
            raise ConflictError("Role already exists", detail={"field": "name"})
        if updated is None:
            raise NotFoundError("role not found")
        activity.record_activity(
            self.store, actor_id, activity.ROLE_UPDATE, f"Role {updated.name} updated", ip_address
        )
        return updated

    def delete(
        self,
        role_id: str,
        *,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        existing = self.get(role_id)
        if is_admin_role(existing.name):
            raise BadRequestError("Admin role cannot be deleted")
        self.store.delete_role(role_id)
        activity.record_activity(
            self.store, actor_id, activity.ROLE_DELETE, f"Role {existing.name} deleted", ip_address
        )
