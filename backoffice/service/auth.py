from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from ipaddress import ip_address as parse_ip, ip_network
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from backoffice.config import Settings
from backoffice.logging import get_logger
from backoffice.service import activity
from backoffice.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from backoffice.service.permissions import PermissionResolver
from backoffice.service.roles import ADMIN_PERMISSIONS, ADMIN_ROLE_NAME
from backoffice.service.sessions import SessionStore
from backoffice.service.tokens import TokenIssuer, TokenPair
from backoffice.storage.errors import AlreadyInitialized, ConstraintViolation
from backoffice.storage.models import (
    LOGIN_METHOD_IP_BASED,
    CustomRole,
    PermissionMap,
    Principal,
    RefreshToken,
    ResolvedPrincipal,
    Session,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8

AUTH_REQUIRED = "authentication required"
INVALID_CREDENTIALS = "invalid credentials"


class AuthStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def update_principal(self, principal_id: str, **changes: Any) -> Optional[Principal]: ...

    def update_last_login(
        self, principal_id: str, at: datetime, ip_address: Optional[str]
    ) -> None: ...

    def has_system_admin(self) -> bool: ...

    def bootstrap_admin(self, principal: Principal, role: CustomRole) -> Principal: ...

    def get_role(self, role_id: str) -> Optional[CustomRole]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def deactivate_session(self, session_id: str) -> bool: ...

    def deactivate_principal_sessions(
        self, principal_id: str, *, keep_session_id: Optional[str] = None
    ) -> List[str]: ...

    def save_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str, at: datetime) -> bool: ...

    def revoke_principal_refresh_tokens(self, principal_id: str, at: datetime) -> int: ...

    def record_activity(self, entry: Any) -> Any: ...


@dataclass
class AuthCredentials:
    """Raw credentials lifted off an inbound request."""

    session_cookie: Optional[str] = None
    session_header: Optional[str] = None
    authorization: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class LoginResult:
    principal: Principal
    session: Session
    tokens: TokenPair
    permissions: PermissionMap


AuthMethod = Callable[[AuthCredentials], Awaitable[Optional[ResolvedPrincipal]]]


async def first_success(
    methods: Iterable[Tuple[str, AuthMethod]],
    credentials: AuthCredentials,
    *,
    log: Any = logger,
) -> Optional[ResolvedPrincipal]:
    """Run ``methods`` in order and return the first resolved principal.

    A method that raises counts as a miss so one broken credential path never
    blocks the ones after it.
    """
    for name, method in methods:
        try:
            resolved = await method(credentials)
        except Exception as exc:
            log.warning(
                "auth_method_failed",
                method=name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            continue
        if resolved is not None:
            return resolved
    return None


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def ip_allowed(allowed_ips: Iterable[str], candidate: Optional[str]) -> bool:
    """Match an address against literal IPs, CIDR blocks or the ``*`` wildcard."""
    entries = [entry.strip() for entry in allowed_ips or [] if entry and entry.strip()]
    if "*" in entries:
        return True
    if not candidate:
        return False
    try:
        addr = parse_ip(candidate.strip())
    except ValueError:
        return False
    for entry in entries:
        try:
            if "/" in entry:
                if addr in ip_network(entry, strict=False):
                    return True
            elif addr == parse_ip(entry):
                return True
        except ValueError:
            logger.warning("allowed_ip_entry_invalid", entry=entry)
    return False


class AuthService:
    """Login, session resolution and the cookie -> header -> bearer fallback chain."""

    def __init__(self, store: AuthStore, cache: Optional[Any], settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.sessions = SessionStore(store, cache, settings)
        self.tokens = TokenIssuer(store, settings)
        self.resolver = PermissionResolver()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        self._methods: Tuple[Tuple[str, AuthMethod], ...] = (
            ("cookie", self._via_cookie),
            ("header", self._via_header),
            ("bearer", self._via_bearer),
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- passwords --------------------------------------------------------

    def hash_password(self, password: str) -> str:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        return self._pwd_hasher.hash(password)

    def verify_password(self, principal: Principal, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(principal.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", principal_id=principal.id)
            return False

    # -- resolution -------------------------------------------------------

    def resolve_permissions(self, principal: Principal) -> PermissionMap:
        custom_role = self.store.get_role(principal.role_id) if principal.role_id else None
        return self.resolver.resolve(principal, custom_role)

    def _resolved(
        self, principal: Principal, session_id: Optional[str], method: Optional[str]
    ) -> ResolvedPrincipal:
        return ResolvedPrincipal(
            principal_id=principal.id,
            email=principal.email,
            role=principal.role,
            display_name=principal.display_name,
            permissions=self.resolve_permissions(principal),
            session_id=session_id,
            auth_method=method,
        )

    async def _resolve_session(
        self, session_id: Optional[str], method: str
    ) -> Optional[ResolvedPrincipal]:
        if not session_id:
            return None
        data = await self.sessions.get(session_id)
        if data is None:
            return None
        principal = self.store.get_principal(data.principal_id)
        if principal is None or not principal.is_active:
            return None
        return self._resolved(principal, session_id, method)

    async def _via_cookie(self, credentials: AuthCredentials) -> Optional[ResolvedPrincipal]:
        return await self._resolve_session(credentials.session_cookie, "cookie")

    async def _via_header(self, credentials: AuthCredentials) -> Optional[ResolvedPrincipal]:
        return await self._resolve_session(credentials.session_header, "header")

    async def _via_bearer(self, credentials: AuthCredentials) -> Optional[ResolvedPrincipal]:
        token = _extract_bearer(credentials.authorization)
        if not token:
            return None
        payload = self.tokens.verify_access(token)
        if not payload:
            return None
        principal = self.store.get_principal(str(payload["sub"]))
        if principal is None or not principal.is_active:
            return None
        return self._resolved(principal, payload.get("sid"), "bearer")

    async def authenticate(self, credentials: AuthCredentials) -> ResolvedPrincipal:
        resolved = await first_success(self._methods, credentials, log=self.logger)
        if resolved is None:
            raise AuthenticationError(AUTH_REQUIRED)
        return resolved

    async def try_authenticate(self, credentials: AuthCredentials) -> Optional[ResolvedPrincipal]:
        return await first_success(self._methods, credentials, log=self.logger)

    async def validate_session(self, session_id: Optional[str]) -> Optional[ResolvedPrincipal]:
        return await self._resolve_session(session_id, "cookie")

    def get_principal_with_permissions(
        self, principal_id: str, *, session_id: Optional[str] = None
    ) -> ResolvedPrincipal:
        principal = self.store.get_principal(principal_id)
        if principal is None or not principal.is_active:
            raise AuthenticationError(AUTH_REQUIRED)
        return self._resolved(principal, session_id, None)

    # -- setup ------------------------------------------------------------

    def setup_status(self) -> dict:
        return {"initialized": self.store.has_system_admin()}

    async def setup_admin(
        self,
        email: str,
        password: str,
        display_name: str,
        *,
        ip_address: Optional[str] = None,
    ) -> Principal:
        """Create the first administrative principal exactly once."""
        if self.store.has_system_admin():
            raise ConflictError("system already initialized")
        principal = Principal.new(
            email=email,
            password_hash=self.hash_password(password),
            display_name=display_name,
            role=ADMIN_ROLE_NAME,
        )
        role = CustomRole(
            id=str(uuid.uuid4()),
            name=ADMIN_ROLE_NAME,
            description="Full access to every module",
            permissions={module: list(actions) for module, actions in ADMIN_PERMISSIONS.items()},
        )
        try:
            created = self.store.bootstrap_admin(principal, role)
        except AlreadyInitialized:
            raise ConflictError("system already initialized")
        except ConstraintViolation as exc:
            raise ConflictError.from_constraint(exc)
        activity.record_activity(
            self.store, created.id, activity.SETUP, "System administrator created", ip_address
        )
        self.logger.info("system_admin_created", principal_id=created.id)
        return created

    # -- login / logout / refresh -----------------------------------------

    async def _check_login_rate(self, email: str, ip_address: Optional[str]) -> None:
        if not self.cache:
            return
        key = f"login:{ip_address or 'unknown'}:{email}"
        try:
            allowed = await self.cache.check_rate_limit(
                key, self.settings.login_rate_limit_per_minute, 60
            )
        except Exception as exc:
            # Fail-open: a cache outage must not lock everyone out
            self.logger.warning("login_rate_limit_check_failed", error=str(exc))
            return
        if not allowed:
            raise RateLimitedError("too many login attempts, try again later")

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        normalized = (email or "").strip().lower()
        await self._check_login_rate(normalized, ip_address)
        principal = self.store.get_principal_by_email(normalized)
        if principal is None or not self.verify_password(principal, password):
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not principal.is_active:
            raise AuthenticationError("account is not active")
        if principal.login_method == LOGIN_METHOD_IP_BASED and not ip_allowed(
            principal.allowed_ips, ip_address
        ):
            self.logger.warning(
                "login_ip_rejected", principal_id=principal.id, ip_address=ip_address
            )
            raise ForbiddenError("login not allowed from this IP address")

        session = await self.sessions.create(
            principal, ip_address=ip_address, user_agent=user_agent
        )
        tokens = self.tokens.issue(
            principal, session.id, ip_address=ip_address, user_agent=user_agent
        )
        self.store.update_last_login(principal.id, self._now(), ip_address)
        activity.record_activity(
            self.store, principal.id, activity.LOGIN, "Logged in", ip_address
        )
        self.logger.info("login_succeeded", principal_id=principal.id)
        return LoginResult(
            principal=principal,
            session=session,
            tokens=tokens,
            permissions=self.resolve_permissions(principal),
        )

    async def logout(
        self,
        session_id: Optional[str],
        *,
        principal_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        await self.sessions.invalidate(session_id)
        if principal_id:
            activity.record_activity(
                self.store, principal_id, activity.LOGOUT, "Logged out", ip_address
            )

    async def logout_request(
        self, credentials: AuthCredentials, resolved: Optional[ResolvedPrincipal]
    ) -> None:
        """End the session a request authenticated with.

        When nothing resolved, every session id the request carried is ended.
        """
        if resolved is not None:
            await self.logout(
                resolved.session_id,
                principal_id=resolved.principal_id,
                ip_address=credentials.ip_address,
            )
            return
        for session_id in dict.fromkeys((credentials.session_cookie, credentials.session_header)):
            await self.sessions.invalidate(session_id)

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        return self.tokens.rotate(refresh_token, ip_address=ip_address, user_agent=user_agent)

    async def change_password(
        self,
        principal_id: str,
        old_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found")
        if not self.verify_password(principal, old_password):
            raise BadRequestError("old password is incorrect")
        self.store.update_principal(principal_id, password_hash=self.hash_password(new_password))
        await self.sessions.invalidate_principal(principal_id, keep_session_id=current_session_id)
        self.store.revoke_principal_refresh_tokens(principal_id, self._now())
        activity.record_activity(
            self.store, principal_id, activity.PASSWORD_CHANGE, "Password changed", ip_address
        )
