from __future__ import annotations

from typing import Optional, Sequence

from backoffice.service.auth import AUTH_REQUIRED
from backoffice.service.errors import AuthenticationError, ForbiddenError
from backoffice.service.permissions import has_permission
from backoffice.service.roles import ADMIN_ROLE_KEYS, is_admin_role, normalize_role, normalize_roles
from backoffice.storage.models import ResolvedPrincipal


def check_roles(
    principal: Optional[ResolvedPrincipal], allowed_roles: Sequence[str]
) -> None:
    """Allow when the principal's normalized role is on the allow-list.

    An administrative principal also passes any list naming an admin-equivalent role.
    """
    allowed = normalize_roles(allowed_roles)
    if not allowed:
        return
    if principal is None:
        raise AuthenticationError(AUTH_REQUIRED)
    role = normalize_role(principal.role)
    if role in allowed:
        return
    if is_admin_role(principal.role) and allowed & ADMIN_ROLE_KEYS:
        return
    raise ForbiddenError(
        "role not permitted for this action",
        detail={"allowed_roles": sorted(allowed)},
    )


def check_permissions(
    principal: Optional[ResolvedPrincipal], required: Sequence[str]
) -> None:
    """Allow only when every ``module:action`` requirement is satisfied."""
    if not required:
        return
    if principal is None:
        raise AuthenticationError(AUTH_REQUIRED)
    for permission in required:
        if not has_permission(principal.permissions, permission):
            raise ForbiddenError(
                f"missing permission {permission}",
                detail={"required": permission},
            )
