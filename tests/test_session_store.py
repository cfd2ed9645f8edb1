"""Tests for the two-tier session store (fast tier over the durable session table)."""

from datetime import timedelta

import pytest

from backoffice.service.sessions import SessionStore
from backoffice.storage.memory import MemoryStore
from backoffice.storage.models import Principal, SessionData, utcnow


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def principal(memory_store):
    return memory_store.create_principal(
        Principal.new(
            email="Worker@Example.com",
            password_hash="x",
            display_name="Worker",
            role="Supervisor",
        )
    )


class TestRoundTrip:
    async def test_create_then_get_returns_same_data(self, memory_store, fake_cache, settings, principal):
        """A freshly created session reads back with the principal's identity."""
        sessions = SessionStore(memory_store, fake_cache, settings)
        session = await sessions.create(principal, ip_address="10.0.0.1", user_agent="pytest")

        data = await sessions.get(session.id)
        assert data is not None
        assert data.principal_id == principal.id
        assert data.email == "worker@example.com"
        assert data.role == "Supervisor"
        assert data.expires_at == session.expires_at

    async def test_fast_tier_ttl_equals_remaining_lifetime(self, memory_store, fake_cache, settings, principal):
        sessions = SessionStore(memory_store, fake_cache, settings)
        session = await sessions.create(principal)

        ttl = fake_cache.ttls[session.id]
        expected = settings.session_ttl_days * 24 * 3600
        assert expected - 5 <= ttl <= expected

    async def test_expiry_rewritten_into_past_reads_absent(self, memory_store, fake_cache, settings, principal):
        """Forcing expiresAt into the past makes the session absent in both tiers."""
        sessions = SessionStore(memory_store, fake_cache, settings)
        session = await sessions.create(principal)
        assert await sessions.get(session.id) is not None

        past = utcnow() - timedelta(seconds=1)
        memory_store.get_session(session.id).expires_at = past
        cached = fake_cache.sessions[session.id]
        cached["expires_at"] = past.isoformat()

        assert await sessions.get(session.id) is None
        assert session.id not in fake_cache.sessions

    async def test_expired_durable_row_without_cache(self, memory_store, settings, principal):
        sessions = SessionStore(memory_store, None, settings)
        session = await sessions.create(principal)
        assert await sessions.get(session.id) is not None

        memory_store.get_session(session.id).expires_at = utcnow() - timedelta(minutes=5)
        assert await sessions.get(session.id) is None

    async def test_unknown_or_blank_id_is_absent(self, memory_store, fake_cache, settings):
        sessions = SessionStore(memory_store, fake_cache, settings)
        assert await sessions.get(None) is None
        assert await sessions.get("") is None
        assert await sessions.get("does-not-exist") is None


class TestCacheAside:
    async def test_miss_repopulates_from_durable_tier(self, memory_store, fake_cache, settings, principal):
        sessions = SessionStore(memory_store, fake_cache, settings)
        session = await sessions.create(principal)
        fake_cache.sessions.clear()

        data = await sessions.get(session.id)
        assert data is not None and data.principal_id == principal.id
        assert fake_cache.sessions[session.id]["principal_id"] == principal.id
        assert 0 < fake_cache.ttls[session.id] <= settings.session_ttl_days * 24 * 3600

    async def test_put_writes_fast_tier_only(self, memory_store, fake_cache, settings, principal):
        sessions = SessionStore(memory_store, fake_cache, settings)
        data = SessionData(principal_id=principal.id, email=principal.email, role=principal.role)

        await sessions.put("orphan", data, 60)
        assert fake_cache.sessions["orphan"]["principal_id"] == principal.id
        assert memory_store.get_session("orphan") is None

    async def test_put_with_non_positive_ttl_is_skipped(self, memory_store, fake_cache, settings, principal):
        sessions = SessionStore(memory_store, fake_cache, settings)
        data = SessionData(principal_id=principal.id, email=principal.email, role=principal.role)

        await sessions.put("gone", data, 0)
        assert "gone" not in fake_cache.sessions

    async def test_invalidated_session_is_absent(self, memory_store, fake_cache, settings, principal):
        sessions = SessionStore(memory_store, fake_cache, settings)
        session = await sessions.create(principal)

        await sessions.invalidate(session.id)
        assert session.id not in fake_cache.sessions
        assert memory_store.get_session(session.id).is_active is False
        assert await sessions.get(session.id) is None
        # second invalidation is a no-op
        await sessions.invalidate(session.id)

    async def test_invalidate_principal_keeps_current(self, memory_store, fake_cache, settings, principal):
        sessions = SessionStore(memory_store, fake_cache, settings)
        keep = await sessions.create(principal)
        drop_a = await sessions.create(principal)
        drop_b = await sessions.create(principal)

        closed = await sessions.invalidate_principal(principal.id, keep_session_id=keep.id)
        assert set(closed) == {drop_a.id, drop_b.id}
        assert await sessions.get(keep.id) is not None
        assert await sessions.get(drop_a.id) is None
        assert await sessions.get(drop_b.id) is None

    async def test_corrupt_cache_payload_falls_back(self, memory_store, fake_cache, settings, principal):
        sessions = SessionStore(memory_store, fake_cache, settings)
        session = await sessions.create(principal)
        fake_cache.sessions[session.id] = {"email": "missing principal id"}

        data = await sessions.get(session.id)
        assert data is not None and data.principal_id == principal.id


class TestFastTierOutage:
    async def test_broken_cache_degrades_to_durable_tier(self, memory_store, broken_cache, settings, principal):
        """Fast-tier errors are logged and treated as misses."""
        sessions = SessionStore(memory_store, broken_cache, settings)
        session = await sessions.create(principal)

        data = await sessions.get(session.id)
        assert data is not None and data.principal_id == principal.id

        await sessions.invalidate(session.id)
        assert await sessions.get(session.id) is None

    async def test_durable_tier_errors_propagate(self, fake_cache, settings):
        class ExplodingStore(MemoryStore):
            def get_session(self, session_id):
                raise RuntimeError("database down")

        sessions = SessionStore(ExplodingStore(), fake_cache, settings)
        with pytest.raises(RuntimeError):
            await sessions.get("some-session")
