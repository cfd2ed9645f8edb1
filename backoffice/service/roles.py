"""Role-name classification shared by the resolver, the gate and lifecycle guards."""

from __future__ import annotations

import re
from typing import Dict, FrozenSet, Iterable, Optional

ADMIN_ROLE_KEYS: FrozenSet[str] = frozenset({"ADMIN", "SUPER_ADMIN"})

# Name given to the custom role created by first-time setup
ADMIN_ROLE_NAME = "Admin"

LEGACY_FULL_ACCESS_ROLES: FrozenSet[str] = frozenset({"MANAGER", "HR"})
LEGACY_MODULES = ("organization", "project", "task", "users", "group", "ip_address")
LEGACY_ACTIONS = ("add", "view", "edit", "delete")

MODULES = (
    "organization",
    "project",
    "task",
    "users",
    "group",
    "ip_address",
    "rbac",
    "team",
    "client_group",
    "client_company",
    "client_location",
    "sub_location",
)
ACTIONS = ("add", "create", "view", "edit", "delete", "upload", "download")

ADMIN_PERMISSIONS: Dict[str, tuple] = {
    **{module: ACTIONS for module in MODULES},
    "all": ("all",),
}

_WHITESPACE = re.compile(r"\s+")


def normalize_role(role: Optional[str]) -> str:
    if not role:
        return ""
    return _WHITESPACE.sub("_", str(role).strip()).upper()


def is_admin_role(role: Optional[str]) -> bool:
    return normalize_role(role) in ADMIN_ROLE_KEYS


def normalize_roles(roles: Iterable[Optional[str]]) -> FrozenSet[str]:
    return frozenset(normalize_role(role) for role in roles if normalize_role(role))


__all__ = [
    "ACTIONS",
    "ADMIN_PERMISSIONS",
    "ADMIN_ROLE_KEYS",
    "ADMIN_ROLE_NAME",
    "LEGACY_ACTIONS",
    "LEGACY_FULL_ACCESS_ROLES",
    "LEGACY_MODULES",
    "MODULES",
    "is_admin_role",
    "normalize_role",
    "normalize_roles",
]
