"""FastAPI dependencies binding request credentials to the auth orchestrator and gate."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request

from backoffice.service.auth import AuthCredentials
from backoffice.service.gate import check_permissions, check_roles
from backoffice.service.runtime import get_runtime
from backoffice.storage.models import ResolvedPrincipal


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def get_credentials(request: Request) -> AuthCredentials:
    settings = get_runtime().settings
    return AuthCredentials(
        session_cookie=request.cookies.get(settings.session_cookie_name),
        session_header=request.headers.get(settings.session_header_name),
        authorization=request.headers.get("Authorization"),
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )


async def get_principal(
    credentials: AuthCredentials = Depends(get_credentials),
) -> ResolvedPrincipal:
    return await get_runtime().auth.authenticate(credentials)


def require_roles(*roles: str):
    """Dependency factory: principal's role must be on ``roles``."""

    async def _require_roles(
        principal: ResolvedPrincipal = Depends(get_principal),
    ) -> ResolvedPrincipal:
        check_roles(principal, roles)
        return principal

    return _require_roles


def require_permissions(*permissions: str):
    """Dependency factory: principal must hold every ``module:action`` listed."""

    async def _require_permissions(
        principal: ResolvedPrincipal = Depends(get_principal),
    ) -> ResolvedPrincipal:
        check_permissions(principal, permissions)
        return principal

    return _require_permissions
