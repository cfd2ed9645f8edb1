from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Union

from backoffice.logging import get_logger
from backoffice.service.roles import (
    ADMIN_PERMISSIONS,
    LEGACY_ACTIONS,
    LEGACY_FULL_ACCESS_ROLES,
    LEGACY_MODULES,
    is_admin_role,
    normalize_role,
)
from backoffice.storage.models import CustomRole, PermissionMap, Principal

logger = get_logger(__name__)

ALL = "all"

# Object-format flags expand to the actions they cover
_FLAG_ACTIONS: Dict[str, FrozenSet[str]] = {
    "read": frozenset({"read", "view"}),
    "write": frozenset({"write", "add", "create", "edit", "update"}),
    "delete": frozenset({"delete"}),
}

_SYNONYMS: Dict[str, str] = {"add": "create", "create": "add"}


@dataclass(frozen=True)
class Parsed:
    modules: Dict[str, FrozenSet[str]]


@dataclass(frozen=True)
class ParseFailed:
    reason: str


ParseResult = Union[Parsed, ParseFailed]


def _parse_actions(value: Any) -> Optional[FrozenSet[str]]:
    if value is True:
        return frozenset({ALL})
    if value is False or value is None:
        return frozenset()
    if isinstance(value, (list, tuple, set, frozenset)):
        if not all(isinstance(item, str) for item in value):
            return None
        return frozenset(value)
    if isinstance(value, dict):
        actions: set = set()
        for flag, enabled in value.items():
            if enabled is not True:
                continue
            actions |= _FLAG_ACTIONS.get(flag, frozenset({flag}))
        return frozenset(actions)
    return None


def parse_permissions_document(raw: Any) -> ParseResult:
    """Parse a custom-role permission document without raising.

    Accepts a mapping or its JSON text. Each module maps to a list of actions,
    ``True`` for every action, or an object of ``{flag: bool}``.
    """
    if raw is None:
        return Parsed({})
    document = raw
    if isinstance(raw, (str, bytes)):
        try:
            document = json.loads(raw)
        except (TypeError, ValueError) as exc:
            return ParseFailed(f"invalid json: {exc}")
        # Double-encoded text from older clients
        if isinstance(document, str):
            return parse_permissions_document(document)
    if not isinstance(document, dict):
        return ParseFailed(f"expected an object, got {type(document).__name__}")

    modules: Dict[str, FrozenSet[str]] = {}
    for module, value in document.items():
        if not isinstance(module, str):
            return ParseFailed("module names must be strings")
        if module == "isSuperAdmin":
            # Derived flag, never trusted from storage
            continue
        actions = _parse_actions(value)
        if actions is None:
            return ParseFailed(f"unsupported value for module {module!r}")
        modules[module] = actions
    return Parsed(modules)


def permissions_from_document(raw: Any) -> PermissionMap:
    result = parse_permissions_document(raw)
    if isinstance(result, ParseFailed):
        logger.warning("permission_document_invalid", reason=result.reason)
        return PermissionMap()
    return PermissionMap(modules=result.modules)


def _admin_map() -> PermissionMap:
    return PermissionMap(
        modules={module: frozenset(actions) for module, actions in ADMIN_PERMISSIONS.items()},
        is_super_admin=True,
    )


def _legacy_map() -> PermissionMap:
    return PermissionMap(
        modules={module: frozenset(LEGACY_ACTIONS) for module in LEGACY_MODULES}
    )


class PermissionResolver:
    """Turn a principal and its optional custom role into a capability map."""

    def resolve(
        self, principal: Principal, custom_role: Optional[CustomRole] = None
    ) -> PermissionMap:
        if is_admin_role(principal.role):
            return _admin_map()
        resolved = PermissionMap()
        if custom_role is not None and custom_role.permissions:
            resolved = permissions_from_document(custom_role.permissions)
        if resolved.modules:
            return resolved
        if normalize_role(principal.role) in LEGACY_FULL_ACCESS_ROLES:
            return _legacy_map()
        return resolved


def has_permission(permission_map: PermissionMap, required: str) -> bool:
    """Check a ``module:action`` requirement against a resolved map."""
    if permission_map.is_super_admin:
        return True
    module, sep, action = required.partition(":")
    if not sep or not module or not action:
        return False

    global_actions = permission_map.modules.get(ALL, frozenset())
    if ALL in global_actions or action in global_actions:
        return True

    actions = permission_map.modules.get(module)
    if not actions:
        return False
    if ALL in actions or action in actions:
        return True
    synonym = _SYNONYMS.get(action)
    if synonym and synonym in actions:
        return True
    # Any grant on a module keeps its listing visible
    return action == "view"


__all__ = [
    "Parsed",
    "ParseFailed",
    "ParseResult",
    "PermissionResolver",
    "has_permission",
    "parse_permissions_document",
    "permissions_from_document",
]
