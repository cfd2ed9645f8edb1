"""Tests for access/refresh token issuance and single-use refresh rotation."""

import base64
import json
from datetime import timedelta

import pytest

from backoffice.config import Settings
from backoffice.service.errors import AuthenticationError
from backoffice.service.tokens import TokenIssuer
from backoffice.storage.memory import MemoryStore
from backoffice.storage.models import PRINCIPAL_STATUS_INACTIVE, Principal, utcnow


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def issuer(memory_store, settings):
    return TokenIssuer(memory_store, settings)


@pytest.fixture
def principal(memory_store):
    return memory_store.create_principal(
        Principal.new(email="tokens@example.com", password_hash="x", display_name="Tok", role="Support")
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    def test_access_payload_carries_identity(self, issuer, principal):
        pair = issuer.issue(principal, "sess-1")
        payload = issuer.verify_access(pair.access_token)

        assert payload["sub"] == principal.id
        assert payload["email"] == principal.email
        assert payload["role"] == "Support"
        assert payload["sid"] == "sess-1"
        assert payload["token_type"] == "access"

    def test_refresh_token_is_persisted(self, issuer, principal, memory_store):
        pair = issuer.issue(principal, None, ip_address="10.1.1.1", user_agent="ua")
        record = memory_store.get_refresh_token(pair.refresh_token)

        assert record is not None
        assert record.principal_id == principal.id
        assert record.ip_address == "10.1.1.1"
        assert record.user_agent == "ua"
        assert record.is_revoked is False
        assert record.replaced_by is None

    def test_lifetimes_follow_settings(self, issuer, principal, settings):
        before = utcnow()
        pair = issuer.issue(principal)
        access_window = pair.access_expires_at - before
        refresh_window = pair.refresh_expires_at - before

        assert timedelta(minutes=settings.access_token_ttl_minutes - 1) < access_window
        assert access_window <= timedelta(minutes=settings.access_token_ttl_minutes, seconds=1)
        assert timedelta(days=settings.refresh_token_ttl_days) - timedelta(minutes=1) < refresh_window

    def test_access_and_refresh_secrets_are_independent(self, issuer, principal):
        pair = issuer.issue(principal)
        assert issuer.verify_refresh(pair.access_token) is None
        assert issuer.verify_access(pair.refresh_token) is None

    def test_token_from_other_secret_is_rejected(self, issuer, principal, memory_store):
        other = TokenIssuer(
            memory_store,
            Settings(
                jwt_access_secret="A-Completely-Different-Access-Secret-000000",
                jwt_refresh_secret="A-Completely-Different-Refresh-Secret-00000",
                redis_url="",
            ),
        )
        pair = other.issue(principal)
        assert issuer.verify_access(pair.access_token) is None

    def test_tampered_payload_is_rejected(self, issuer, principal):
        pair = issuer.issue(principal)
        header, _, signature = pair.access_token.split(".")
        forged = _b64(
            {
                "iss": "backoffice",
                "aud": "backoffice-clients",
                "sub": "someone-else",
                "token_type": "access",
                "exp": int((utcnow() + timedelta(hours=1)).timestamp()),
            }
        )
        assert issuer.verify_access(f"{header}.{forged}.{signature}") is None

    def test_alg_none_is_rejected(self, issuer, principal):
        pair = issuer.issue(principal)
        _, payload, _ = pair.access_token.split(".")
        unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        assert issuer.verify_access(unsigned) is None

    def test_expired_token_is_rejected(self, memory_store, principal):
        issuer = TokenIssuer(
            memory_store,
            Settings(
                jwt_access_secret="Access-Secret-For-Automation-Only-0123456789",
                jwt_refresh_secret="Refresh-Secret-For-Automation-Only-9876543210",
                redis_url="",
            ),
        )
        now = utcnow() - timedelta(hours=1)
        payload = issuer._payload(principal, None, "access", now, now + timedelta(minutes=5))
        token = issuer._encode_jwt(payload, "access")
        assert issuer.verify_access(token) is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "....."])
    def test_garbage_is_rejected(self, issuer, garbage):
        assert issuer.verify_access(garbage) is None


class TestRotate:
    def test_rotation_is_single_use_and_linked(self, issuer, principal, memory_store):
        """R1 -> R2 works once; R2 records R1 as its predecessor; R1 cannot be reused."""
        first = issuer.issue(principal, "sess-1")
        second = issuer.rotate(first.refresh_token)

        assert second.refresh_token != first.refresh_token
        old_record = memory_store.get_refresh_token(first.refresh_token)
        new_record = memory_store.get_refresh_token(second.refresh_token)
        assert old_record.is_revoked is True
        assert old_record.revoked_at is not None
        assert new_record.replaced_by == first.refresh_token
        assert new_record.is_revoked is False

        with pytest.raises(AuthenticationError) as excinfo:
            issuer.rotate(first.refresh_token)
        assert excinfo.value.message == "invalid or expired refresh token"

    def test_replayed_token_is_logged_as_reuse(self, issuer, principal):
        events = []

        class RecordingLogger:
            def info(self, event, **fields):
                events.append(("info", event, fields))

            def warning(self, event, **fields):
                events.append(("warning", event, fields))

        issuer.logger = RecordingLogger()
        first = issuer.issue(principal, "sess-1")
        issuer.rotate(first.refresh_token)

        with pytest.raises(AuthenticationError):
            issuer.rotate(first.refresh_token)
        assert events[-1] == (
            "warning",
            "refresh_token_reuse_detected",
            {"principal_id": principal.id},
        )

    def test_rotation_keeps_session_claim(self, issuer, principal):
        first = issuer.issue(principal, "sess-9")
        second = issuer.rotate(first.refresh_token)
        assert issuer.verify_access(second.access_token)["sid"] == "sess-9"

    def test_chain_of_rotations(self, issuer, principal, memory_store):
        r1 = issuer.issue(principal).refresh_token
        r2 = issuer.rotate(r1).refresh_token
        r3 = issuer.rotate(r2).refresh_token

        assert memory_store.get_refresh_token(r3).replaced_by == r2
        assert memory_store.get_refresh_token(r2).replaced_by == r1

    def test_access_token_cannot_rotate(self, issuer, principal):
        pair = issuer.issue(principal)
        with pytest.raises(AuthenticationError):
            issuer.rotate(pair.access_token)

    def test_unpersisted_refresh_token_is_rejected(self, issuer, principal, memory_store):
        pair = issuer.issue(principal)
        memory_store.refresh_tokens.pop(pair.refresh_token)
        with pytest.raises(AuthenticationError):
            issuer.rotate(pair.refresh_token)

    def test_expired_record_is_rejected(self, issuer, principal, memory_store):
        pair = issuer.issue(principal)
        memory_store.get_refresh_token(pair.refresh_token).expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(AuthenticationError):
            issuer.rotate(pair.refresh_token)

    def test_inactive_principal_cannot_rotate(self, issuer, principal, memory_store):
        pair = issuer.issue(principal)
        memory_store.update_principal(principal.id, status=PRINCIPAL_STATUS_INACTIVE)
        with pytest.raises(AuthenticationError):
            issuer.rotate(pair.refresh_token)
