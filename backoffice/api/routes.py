from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Query, Request, Response

from backoffice.api.dependencies import (
    client_ip,
    get_credentials,
    get_principal,
    require_permissions,
    require_roles,
)
from backoffice.api.schemas import (
    ActivityListResponse,
    ActivityResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    MeResponse,
    PasswordChangeRequest,
    PrincipalCreateRequest,
    PrincipalListResponse,
    PrincipalResponse,
    PrincipalStatusRequest,
    PrincipalUpdateRequest,
    RefreshRequest,
    RoleCreateRequest,
    RoleListResponse,
    RoleResponse,
    RoleUpdateRequest,
    SessionCheckRequest,
    SetupAdminRequest,
    TokenResponse,
)
from backoffice.config import SameSitePolicy, Settings
from backoffice.logging import get_logger
from backoffice.service.auth import AUTH_REQUIRED, AuthCredentials
from backoffice.service.errors import AuthenticationError
from backoffice.service.runtime import get_runtime
from backoffice.storage.models import ResolvedPrincipal, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


# -- cookie policy ---------------------------------------------------------


@dataclass(frozen=True)
class CookiePolicy:
    secure: bool
    same_site: str
    domain: Optional[str] = None


def _root_domain(url: str) -> Optional[str]:
    host = urlparse(url.strip()).hostname
    if not host:
        return None
    return ".".join(host.split(".")[-2:])


def _is_cross_origin(origins, base_url: str) -> bool:
    backend_root = _root_domain(base_url) if base_url else None
    if not backend_root:
        return False
    for origin in origins or []:
        frontend_root = _root_domain(origin)
        if frontend_root and frontend_root != backend_root:
            return True
    return False


def cookie_options(settings: Settings) -> CookiePolicy:
    """Resolve SameSite/Secure/Domain for the session cookie.

    Explicit COOKIE_* settings win. Otherwise development gets ``lax`` over
    plain HTTP, and production gets ``none`` when the browser origins live on a
    different root domain than the API, else ``lax``.
    """
    if settings.cookie_same_site is not None:
        same_site = settings.cookie_same_site.value
    elif not settings.is_production:
        same_site = SameSitePolicy.LAX.value
    elif _is_cross_origin(settings.cors_allow_origins, settings.app_base_url):
        same_site = SameSitePolicy.NONE.value
    else:
        same_site = SameSitePolicy.LAX.value

    if settings.cookie_secure is not None:
        secure = settings.cookie_secure
    else:
        secure = settings.is_production

    # Browsers drop SameSite=None cookies without Secure
    if same_site == SameSitePolicy.NONE.value and not secure:
        logger.warning("cookie_secure_forced", same_site=same_site)
        secure = True

    domain = settings.cookie_domain
    if domain and domain.strip().lower() == "localhost":
        domain = None
    return CookiePolicy(secure=secure, same_site=same_site, domain=domain)


def _set_session_cookie(response: Response, session: Session, settings: Settings) -> None:
    policy = cookie_options(settings)
    response.set_cookie(
        settings.session_cookie_name,
        session.id,
        max_age=max(0, session.remaining_seconds()),
        httponly=True,
        secure=policy.secure,
        samesite=policy.same_site,
        domain=policy.domain,
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    policy = cookie_options(settings)
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        domain=policy.domain,
        secure=policy.secure,
        httponly=True,
        samesite=policy.same_site,
    )


# -- auth ----------------------------------------------------------------


@router.get("/auth/setup-status", response_model=Envelope, tags=["auth"])
async def setup_status():
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.setup_status())


@router.post("/auth/setup-admin", response_model=Envelope, status_code=201, tags=["auth"])
async def setup_admin(body: SetupAdminRequest, request: Request):
    """Create the first administrator. Fails with 409 once the system is initialized."""
    runtime = get_runtime()
    principal = await runtime.auth.setup_admin(
        body.email,
        body.password,
        body.display_name,
        ip_address=client_ip(request),
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Sets the session cookie and also returns the session id in the body for
    clients that cannot keep cookies, plus an access/refresh token pair.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    _set_session_cookie(response, result.session, runtime.settings)
    return Envelope(
        status="ok",
        data=AuthResponse(
            principal_id=result.principal.id,
            session_id=result.session.id,
            session_expires_at=result.session.expires_at,
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            access_expires_at=result.tokens.access_expires_at,
            role=result.principal.role,
            permissions=result.permissions.as_dict(),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(
        body.refresh_token,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            access_expires_at=pair.access_expires_at,
        ),
    )


@router.post("/auth/session/check", response_model=Envelope, tags=["auth"])
async def session_check(
    body: Optional[SessionCheckRequest] = None,
    credentials: AuthCredentials = Depends(get_credentials),
):
    runtime = get_runtime()
    session_id = (
        credentials.session_cookie
        or credentials.session_header
        or (body.session_id if body else None)
    )
    resolved = await runtime.auth.validate_session(session_id)
    if resolved is None:
        raise AuthenticationError(AUTH_REQUIRED)
    return Envelope(
        status="ok",
        data={"valid": True, "principal_id": resolved.principal_id, "session_id": session_id},
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, credentials: AuthCredentials = Depends(get_credentials)):
    runtime = get_runtime()
    resolved = await runtime.auth.try_authenticate(credentials)
    await runtime.auth.logout_request(credentials, resolved)
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: ResolvedPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    record = runtime.principals.get(principal.principal_id)
    return Envelope(
        status="ok",
        data=MeResponse(
            principal=PrincipalResponse.from_principal(record),
            permissions=principal.permissions.as_dict(),
            auth_method=principal.auth_method,
            session_id=principal.session_id,
        ),
    )


@router.get("/auth/refresh-permissions", response_model=Envelope, tags=["auth"])
async def refresh_permissions(principal: ResolvedPrincipal = Depends(get_principal)):
    """Re-read the principal's role document and return the effective permissions."""
    runtime = get_runtime()
    fresh = runtime.auth.get_principal_with_permissions(
        principal.principal_id, session_id=principal.session_id
    )
    return Envelope(
        status="ok",
        data={"role": fresh.role, "permissions": fresh.permissions.as_dict()},
    )


@router.patch("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: ResolvedPrincipal = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.principal_id,
        body.old_password,
        body.new_password,
        current_session_id=principal.session_id,
        ip_address=client_ip(request),
    )
    return Envelope(status="ok", data={"status": "changed"})


# -- team members ------------------------------------------------------------


@router.get("/teams", response_model=Envelope, tags=["teams"])
async def list_team(
    status: Optional[str] = Query(None, max_length=16),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: ResolvedPrincipal = Depends(require_permissions("users:view")),
):
    runtime = get_runtime()
    items = runtime.principals.list(status=status, limit=limit, offset=offset)
    return Envelope(
        status="ok",
        data=PrincipalListResponse(items=[PrincipalResponse.from_principal(p) for p in items]),
    )


@router.post("/teams", response_model=Envelope, status_code=201, tags=["teams"])
async def create_team_member(
    body: PrincipalCreateRequest,
    request: Request,
    principal: ResolvedPrincipal = Depends(require_permissions("users:create")),
):
    runtime = get_runtime()
    created = runtime.principals.create(
        **body.model_dump(),
        actor_id=principal.principal_id,
        ip_address=client_ip(request),
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(created))


@router.get("/teams/{principal_id}", response_model=Envelope, tags=["teams"])
async def get_team_member(
    principal_id: str,
    principal: ResolvedPrincipal = Depends(require_permissions("users:view")),
):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=PrincipalResponse.from_principal(runtime.principals.get(principal_id))
    )


@router.patch("/teams/{principal_id}", response_model=Envelope, tags=["teams"])
async def update_team_member(
    principal_id: str,
    body: PrincipalUpdateRequest,
    request: Request,
    principal: ResolvedPrincipal = Depends(require_permissions("users:edit")),
):
    runtime = get_runtime()
    updated = runtime.principals.update(
        principal_id,
        body.model_dump(exclude_unset=True),
        actor_id=principal.principal_id,
        ip_address=client_ip(request),
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(updated))


@router.patch("/teams/{principal_id}/status", response_model=Envelope, tags=["teams"])
async def change_team_member_status(
    principal_id: str,
    body: PrincipalStatusRequest,
    request: Request,
    principal: ResolvedPrincipal = Depends(require_permissions("users:edit")),
):
    runtime = get_runtime()
    updated = await runtime.principals.change_status(
        principal_id,
        body.status,
        actor_id=principal.principal_id,
        ip_address=client_ip(request),
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(updated))


@router.delete("/teams/{principal_id}", response_model=Envelope, tags=["teams"])
async def delete_team_member(
    principal_id: str,
    request: Request,
    principal: ResolvedPrincipal = Depends(require_permissions("users:delete")),
):
    runtime = get_runtime()
    runtime.principals.delete(
        principal_id, actor_id=principal.principal_id, ip_address=client_ip(request)
    )
    return Envelope(status="ok", data={"deleted": principal_id})


# -- roles -----------------------------------------------------------------


@router.get("/rbac/roles", response_model=Envelope, tags=["rbac"])
async def list_roles(principal: ResolvedPrincipal = Depends(require_permissions("rbac:view"))):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=RoleListResponse(items=[RoleResponse.from_role(r) for r in runtime.roles.list()]),
    )


@router.post("/rbac/roles", response_model=Envelope, status_code=201, tags=["rbac"])
async def create_role(
    body: RoleCreateRequest,
    request: Request,
    principal: ResolvedPrincipal = Depends(require_permissions("rbac:create")),
):
    runtime = get_runtime()
    role = runtime.roles.create(
        name=body.name,
        description=body.description,
        permissions=body.permissions,
        actor_id=principal.principal_id,
        ip_address=client_ip(request),
    )
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.get("/rbac/roles/{role_id}", response_model=Envelope, tags=["rbac"])
async def get_role(
    role_id: str,
    principal: ResolvedPrincipal = Depends(require_permissions("rbac:view")),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=RoleResponse.from_role(runtime.roles.get(role_id)))


@router.patch("/rbac/roles/{role_id}", response_model=Envelope, tags=["rbac"])
async def update_role(
    role_id: str,
    body: RoleUpdateRequest,
    request: Request,
    principal: ResolvedPrincipal = Depends(require_permissions("rbac:edit")),
):
    runtime = get_runtime()
    role = runtime.roles.update(
        role_id,
        name=body.name,
        description=body.description,
        permissions=body.permissions,
        actor_id=principal.principal_id,
        ip_address=client_ip(request),
    )
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.delete("/rbac/roles/{role_id}", response_model=Envelope, tags=["rbac"])
async def delete_role(
    role_id: str,
    request: Request,
    principal: ResolvedPrincipal = Depends(require_permissions("rbac:delete")),
):
    runtime = get_runtime()
    runtime.roles.delete(role_id, actor_id=principal.principal_id, ip_address=client_ip(request))
    return Envelope(status="ok", data={"deleted": role_id})


# -- admin -----------------------------------------------------------------


@router.get("/admin/activity", response_model=Envelope, tags=["admin"])
async def list_activity(
    principal_id: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=500),
    principal: ResolvedPrincipal = Depends(require_roles("ADMIN", "SUPER_ADMIN")),
):
    runtime = get_runtime()
    entries = runtime.store.list_activity(principal_id=principal_id, limit=limit)
    return Envelope(
        status="ok",
        data=ActivityListResponse(items=[ActivityResponse.from_entry(e) for e in entries]),
    )
