from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


PRINCIPAL_STATUS_ACTIVE = "Active"
PRINCIPAL_STATUS_INACTIVE = "Inactive"
PRINCIPAL_STATUSES = (PRINCIPAL_STATUS_ACTIVE, PRINCIPAL_STATUS_INACTIVE)

LOGIN_METHOD_GENERAL = "General"
LOGIN_METHOD_IP_BASED = "IpBased"
LOGIN_METHODS = (LOGIN_METHOD_GENERAL, LOGIN_METHOD_IP_BASED)


@dataclass
class Principal:
    """A back-office team member that can sign in."""

    id: str
    email: str
    password_hash: str
    display_name: str
    role: str = "Employee"
    role_id: Optional[str] = None
    status: str = PRINCIPAL_STATUS_ACTIVE
    login_method: str = LOGIN_METHOD_GENERAL
    allowed_ips: List[str] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    is_system_user: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == PRINCIPAL_STATUS_ACTIVE

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        display_name: str,
        role: str = "Employee",
        **kwargs: Any,
    ) -> "Principal":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=password_hash,
            display_name=display_name,
            role=role,
            **kwargs,
        )


@dataclass
class CustomRole:
    id: str
    name: str
    description: Optional[str] = None
    # dict as authored, or the JSON text some clients send
    permissions: Dict[str, Any] | str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class Session:
    id: str
    principal_id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and (now or utcnow()) < self.expires_at

    def remaining_seconds(self, now: Optional[datetime] = None) -> int:
        return int((self.expires_at - (now or utcnow())).total_seconds())

    @classmethod
    def new(
        cls,
        principal_id: str,
        ttl: timedelta,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            principal_id=principal_id,
            created_at=now,
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class SessionData:
    """Fast-tier payload cached for a session id."""

    principal_id: str
    email: str
    role: str
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "email": self.email,
            "role": self.role,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SessionData":
        expires_at = payload.get("expires_at")
        return cls(
            principal_id=str(payload["principal_id"]),
            email=str(payload.get("email") or ""),
            role=str(payload.get("role") or ""),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )


@dataclass
class RefreshToken:
    token: str
    principal_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    # the predecessor this token was issued in exchange for
    replaced_by: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class ActivityLog:
    id: str
    principal_id: Optional[str]
    type: str
    description: str
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PermissionMap:
    """Resolved module -> actions capability set for one principal."""

    modules: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    is_super_admin: bool = False

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            module: sorted(actions) for module, actions in sorted(self.modules.items())
        }
        if self.is_super_admin:
            payload["isSuperAdmin"] = True
        return payload

    @property
    def is_empty(self) -> bool:
        return not self.is_super_admin and not any(self.modules.values())


@dataclass
class ResolvedPrincipal:
    principal_id: str
    email: str
    role: str
    display_name: str
    permissions: PermissionMap
    session_id: Optional[str] = None
    auth_method: Optional[str] = None
