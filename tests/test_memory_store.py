"""Tests for the in-process store: constraints, revocation and JSON persistence."""

from datetime import timedelta

import pytest

from backoffice.storage.errors import AlreadyInitialized, ConstraintViolation
from backoffice.storage.memory import MemoryStore
from backoffice.storage.models import CustomRole, Principal, RefreshToken, Session, utcnow


def _principal(email="keeper@example.com", **kwargs):
    return Principal.new(email=email, password_hash="hash", display_name="Keeper", **kwargs)


class TestConstraints:
    def test_email_is_unique_case_insensitively(self):
        store = MemoryStore()
        store.create_principal(_principal("Keeper@Example.com"))
        with pytest.raises(ConstraintViolation):
            store.create_principal(_principal("keeper@example.COM"))

    def test_principal_requires_existing_role(self):
        store = MemoryStore()
        with pytest.raises(ConstraintViolation):
            store.create_principal(_principal(role_id="missing"))

    def test_session_requires_principal(self):
        store = MemoryStore()
        with pytest.raises(ConstraintViolation):
            store.create_session(Session.new("ghost", timedelta(days=1)))

    def test_bootstrap_only_once(self):
        store = MemoryStore()
        role = CustomRole(id="admin-role", name="Admin", permissions={})
        store.bootstrap_admin(_principal("one@example.com", role="Admin"), role)
        with pytest.raises(AlreadyInitialized):
            store.bootstrap_admin(_principal("two@example.com", role="Admin"), role)

    def test_delete_refused_while_dependents_remain(self):
        store = MemoryStore()
        principal = store.create_principal(_principal())
        store.record_dependent(principal.id, "created_tasks", "t-1")
        with pytest.raises(ConstraintViolation):
            store.delete_principal(principal.id)


class TestRefreshTokens:
    def test_revoke_is_compare_and_set(self):
        store = MemoryStore()
        principal = store.create_principal(_principal())
        store.save_refresh_token(
            RefreshToken(token="r-1", principal_id=principal.id, expires_at=utcnow() + timedelta(days=1))
        )
        assert store.revoke_refresh_token("r-1", utcnow()) is True
        assert store.revoke_refresh_token("r-1", utcnow()) is False
        assert store.revoke_refresh_token("unknown", utcnow()) is False

    def test_revoke_all_for_principal(self):
        store = MemoryStore()
        principal = store.create_principal(_principal())
        for token in ("a", "b"):
            store.save_refresh_token(
                RefreshToken(token=token, principal_id=principal.id, expires_at=utcnow() + timedelta(days=1))
            )
        assert store.revoke_principal_refresh_tokens(principal.id, utcnow()) == 2
        assert store.revoke_principal_refresh_tokens(principal.id, utcnow()) == 0


class TestRoles:
    def test_delete_role_unlinks_principals(self):
        store = MemoryStore()
        role = store.create_role(CustomRole(id="r-1", name="Support", permissions={}))
        principal = store.create_principal(_principal(role="Support", role_id=role.id))

        assert store.delete_role(role.id) is True
        assert store.get_principal(principal.id).role_id is None
        assert store.delete_role(role.id) is False

    def test_role_names_are_unique(self):
        store = MemoryStore()
        store.create_role(CustomRole(id="r-1", name="Support"))
        with pytest.raises(ConstraintViolation):
            store.create_role(CustomRole(id="r-2", name=" support "))


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        role = store.create_role(CustomRole(id="r-1", name="Support", permissions={"task": ["view"]}))
        principal = store.create_principal(
            _principal(role="Support", role_id=role.id, allowed_ips=["10.0.0.1"])
        )
        session = store.create_session(Session.new(principal.id, timedelta(days=1), "10.0.0.1"))
        store.save_refresh_token(
            RefreshToken(token="r-1", principal_id=principal.id, expires_at=utcnow() + timedelta(days=1))
        )
        store.record_dependent(principal.id, "created_tasks", "t-1")

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_principal(principal.id)
        assert restored.email == "keeper@example.com"
        assert restored.allowed_ips == ["10.0.0.1"]
        assert restored.created_at == principal.created_at
        assert reloaded.get_role(role.id).permissions == {"task": ["view"]}
        assert reloaded.get_session(session.id).expires_at == session.expires_at
        assert reloaded.get_refresh_token("r-1").principal_id == principal.id
        assert reloaded.count_dependents(principal.id) == {"created_tasks": 1}
        assert (tmp_path / "state" / "memory_store.json").exists()

    def test_no_fs_root_means_no_files(self, tmp_path):
        store = MemoryStore()
        store.create_principal(_principal())
        assert not (tmp_path / "state").exists()
