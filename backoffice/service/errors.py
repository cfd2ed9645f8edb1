from __future__ import annotations

from typing import Optional

from backoffice.storage.errors import ConstraintViolation


class ServiceError(Exception):
    """Raised by the auth, team and role services; rendered as the error envelope.

    ``status_code`` picks the HTTP status and ``error_code`` the stable
    ``error.code`` string clients switch on.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @classmethod
    def from_constraint(cls, exc: ConstraintViolation) -> "ServiceError":
        """Re-raise a storage constraint failure with its message and detail intact."""
        return cls(exc.message, detail=exc.detail)


class ValidationError(ServiceError):
    pass


class BadRequestError(ValidationError):
    """Well-formed request that breaks a team or role rule (admin protection, dependents)."""


class AuthenticationError(ServiceError):
    """No credential in the fallback chain resolved to an active principal."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated, but the role or permission document does not allow it."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email or role name, or setup on an already initialized system."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
