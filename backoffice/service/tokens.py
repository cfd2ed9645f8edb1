from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from backoffice.config import Settings
from backoffice.logging import get_logger
from backoffice.service.errors import AuthenticationError
from backoffice.storage.models import Principal, RefreshToken

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

INVALID_REFRESH = "invalid or expired refresh token"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """HS256 access/refresh tokens with single-use refresh rotation.

    Access and refresh tokens are signed with independent secrets so a leaked
    refresh secret cannot mint access tokens and vice versa.
    """

    def __init__(self, store: Any, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _secret(self, token_type: str) -> bytes:
        if token_type == REFRESH:
            return self.settings.jwt_refresh_secret.encode()
        return self.settings.jwt_access_secret.encode()

    def _encode_jwt(self, payload: Dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _decode_jwt(self, token: str, token_type: str) -> Optional[Dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Only HS256 is accepted; anything else is an algorithm-confusion attempt
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(self._secret(token_type), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        if not payload.get("sub"):
            return None
        return payload

    def verify_access(self, token: str) -> Optional[Dict[str, Any]]:
        return self._decode_jwt(token, ACCESS)

    def verify_refresh(self, token: str) -> Optional[Dict[str, Any]]:
        return self._decode_jwt(token, REFRESH)

    def _payload(
        self,
        principal: Principal,
        session_id: Optional[str],
        token_type: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal.id,
            "email": principal.email,
            "role": principal.role,
            "sid": session_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }

    def issue(
        self,
        principal: Principal,
        session_id: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        replaces: Optional[str] = None,
    ) -> TokenPair:
        now = self._now()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(days=self.settings.refresh_token_ttl_days)
        access_token = self._encode_jwt(
            self._payload(principal, session_id, ACCESS, now, access_exp), ACCESS
        )
        refresh_token = self._encode_jwt(
            self._payload(principal, session_id, REFRESH, now, refresh_exp), REFRESH
        )
        self.store.save_refresh_token(
            RefreshToken(
                token=refresh_token,
                principal_id=principal.id,
                expires_at=refresh_exp,
                created_at=now,
                replaced_by=replaces,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def rotate(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new pair; each token is usable once."""
        payload = self.verify_refresh(refresh_token)
        if not payload:
            raise AuthenticationError(INVALID_REFRESH)
        now = self._now()
        record = self.store.get_refresh_token(refresh_token)
        if record is not None and record.is_revoked:
            self.logger.warning("refresh_token_reuse_detected", principal_id=record.principal_id)
            raise AuthenticationError(INVALID_REFRESH)
        if (
            record is None
            or record.expires_at <= now
            or record.principal_id != payload.get("sub")
        ):
            raise AuthenticationError(INVALID_REFRESH)
        principal = self.store.get_principal(record.principal_id)
        if principal is None or not principal.is_active:
            raise AuthenticationError(INVALID_REFRESH)
        # Compare-and-set: a concurrent exchange of the same token loses here
        if not self.store.revoke_refresh_token(refresh_token, now):
            self.logger.warning("refresh_token_reuse_detected", principal_id=record.principal_id)
            raise AuthenticationError(INVALID_REFRESH)
        pair = self.issue(
            principal,
            payload.get("sid"),
            ip_address=ip_address,
            user_agent=user_agent,
            replaces=refresh_token,
        )
        self.logger.info("refresh_token_rotated", principal_id=principal.id)
        return pair
