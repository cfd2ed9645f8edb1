from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backoffice.logging import get_correlation_id
from backoffice.storage.models import ActivityLog, CustomRole, Principal

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# -- auth ----------------------------------------------------------------


class SetupAdminRequest(BaseModel):
    email: str
    password: str
    display_name: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_setup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class SessionCheckRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=256)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    old_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PrincipalResponse(BaseModel):
    id: str
    email: str
    display_name: str
    role: str
    role_id: Optional[str] = None
    status: str
    login_method: str
    allowed_ips: List[str] = Field(default_factory=list)
    last_login_at: Optional[datetime] = None
    is_system_user: bool = False
    created_at: datetime

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.id,
            email=principal.email,
            display_name=principal.display_name,
            role=principal.role,
            role_id=principal.role_id,
            status=principal.status,
            login_method=principal.login_method,
            allowed_ips=list(principal.allowed_ips or []),
            last_login_at=principal.last_login_at,
            is_system_user=principal.is_system_user,
            created_at=principal.created_at,
        )


class AuthResponse(BaseModel):
    principal_id: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    role: str
    permissions: Dict[str, Any]


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime


class MeResponse(BaseModel):
    principal: PrincipalResponse
    permissions: Dict[str, Any]
    auth_method: Optional[str] = None
    session_id: Optional[str] = None


# -- team ----------------------------------------------------------------


class PrincipalCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str
    display_name: str = Field(..., min_length=1, max_length=128)
    role: Optional[str] = Field(default=None, max_length=64)
    role_id: Optional[str] = Field(default=None, max_length=64)
    status: Optional[Literal["Active", "Inactive"]] = None
    login_method: Optional[Literal["General", "IpBased"]] = None
    allowed_ips: Optional[List[str]] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_create_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PrincipalUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = None
    password: Optional[str] = None
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    role: Optional[str] = Field(default=None, max_length=64)
    role_id: Optional[str] = Field(default=None, max_length=64)
    login_method: Optional[Literal["General", "IpBased"]] = None
    allowed_ips: Optional[List[str]] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class PrincipalStatusRequest(BaseModel):
    status: Literal["Active", "Inactive"]


class PrincipalListResponse(BaseModel):
    items: List[PrincipalResponse]


# -- roles ---------------------------------------------------------------


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)
    permissions: Optional[Any] = None


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)
    permissions: Optional[Any] = None


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    permissions: Optional[Any] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_role(cls, role: CustomRole) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            permissions=role.permissions,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class RoleListResponse(BaseModel):
    items: List[RoleResponse]


# -- activity ------------------------------------------------------------


class ActivityResponse(BaseModel):
    id: str
    principal_id: Optional[str] = None
    type: str
    description: str
    ip_address: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: ActivityLog) -> "ActivityResponse":
        return cls(
            id=entry.id,
            principal_id=entry.principal_id,
            type=entry.type,
            description=entry.description,
            ip_address=entry.ip_address,
            created_at=entry.created_at,
        )


class ActivityListResponse(BaseModel):
    items: List[ActivityResponse]
