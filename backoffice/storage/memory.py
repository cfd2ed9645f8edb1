from __future__ import annotations

import json
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from backoffice.logging import get_logger
from backoffice.storage.errors import AlreadyInitialized, ConstraintViolation
from backoffice.storage.models import (
    ActivityLog,
    CustomRole,
    Principal,
    RefreshToken,
    Session,
    utcnow,
)

_T = TypeVar("_T")

_DATETIME_FIELDS = {
    "created_at",
    "updated_at",
    "expires_at",
    "revoked_at",
    "last_login_at",
}


def _serialize(record: Any) -> Dict[str, Any]:
    payload = asdict(record)
    for key, value in payload.items():
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
    return payload


def _deserialize(cls: Type[_T], payload: Dict[str, Any]) -> _T:
    known = {f.name for f in fields(cls)}
    data = {k: v for k, v in payload.items() if k in known}
    for key in _DATETIME_FIELDS & data.keys():
        if isinstance(data[key], str):
            data[key] = datetime.fromisoformat(data[key])
    return cls(**data)


class MemoryStore:
    """Thread-safe in-process store for tests and local development.

    State is optionally mirrored to ``<fs_root>/state/memory_store.json`` so a
    dev server keeps its principals across restarts.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.roles: Dict[str, CustomRole] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.activity: List[ActivityLog] = []
        # principal id -> dependent kind -> referencing record ids
        self.dependents: Dict[str, Dict[str, set]] = {}
        # RLock so compound operations can call the single-record helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- principals -------------------------------------------------------

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            p.email == email and p.id != exclude_id for p in self.principals.values()
        )

    def create_principal(self, principal: Principal) -> Principal:
        with self._data_lock:
            principal.email = principal.email.strip().lower()
            if self._email_taken(principal.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if principal.role_id and principal.role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": principal.role_id})
            self.principals[principal.id] = principal
            self._persist_state()
            return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            return next(
                (p for p in self.principals.values() if p.email == normalized), None
            )

    def list_principals(
        self, *, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Principal]:
        with self._data_lock:
            results = [
                p for p in self.principals.values() if not status or p.status == status
            ]
            results.sort(key=lambda p: p.created_at, reverse=True)
            return results[offset : offset + limit]

    def update_principal(self, principal_id: str, **changes: Any) -> Optional[Principal]:
        with self._data_lock:
            current = self.principals.get(principal_id)
            if not current:
                return None
            if "email" in changes and changes["email"] is not None:
                changes["email"] = changes["email"].strip().lower()
                if self._email_taken(changes["email"], exclude_id=principal_id):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if changes.get("role_id") and changes["role_id"] not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": changes["role_id"]})
            updated = replace(current, **changes, updated_at=utcnow())
            self.principals[principal_id] = updated
            self._persist_state()
            return updated

    def update_last_login(self, principal_id: str, at: datetime, ip_address: Optional[str]) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return
            principal.last_login_at = at
            principal.last_login_ip = ip_address
            self._persist_state()

    def delete_principal(self, principal_id: str) -> bool:
        with self._data_lock:
            if self.count_dependents(principal_id):
                raise ConstraintViolation(
                    "principal still owns dependent records",
                    {"principal_id": principal_id},
                )
            removed = self.principals.pop(principal_id, None)
            if removed is None:
                return False
            for sid in [s.id for s in self.sessions.values() if s.principal_id == principal_id]:
                self.sessions.pop(sid, None)
            for token in [
                t.token for t in self.refresh_tokens.values() if t.principal_id == principal_id
            ]:
                self.refresh_tokens.pop(token, None)
            self._persist_state()
            return True

    def record_dependent(self, principal_id: str, kind: str, ref_id: str) -> None:
        """Mark `ref_id` (a task or group membership) as owned by the principal.

        Called by the task and group modules when they assign records; while any
        remain, `delete_principal` refuses.
        """
        with self._data_lock:
            self.dependents.setdefault(principal_id, {}).setdefault(kind, set()).add(ref_id)
            self._persist_state()

    def release_dependent(self, principal_id: str, kind: str, ref_id: str) -> None:
        """Drop the ownership link once the record is reassigned or removed."""
        with self._data_lock:
            self.dependents.get(principal_id, {}).get(kind, set()).discard(ref_id)
            self._persist_state()

    def count_dependents(self, principal_id: str) -> Dict[str, int]:
        with self._data_lock:
            kinds = self.dependents.get(principal_id, {})
            return {kind: len(refs) for kind, refs in sorted(kinds.items()) if refs}

    def has_system_admin(self) -> bool:
        with self._data_lock:
            return any(p.is_system_user for p in self.principals.values())

    def bootstrap_admin(self, principal: Principal, role: CustomRole) -> Principal:
        """Create the first administrative principal and its role in one step."""
        with self._data_lock:
            if self.has_system_admin():
                raise AlreadyInitialized("an administrative principal already exists")
            # Every failure check runs before the role table is touched
            principal.email = principal.email.strip().lower()
            if self._email_taken(principal.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            existing_role = next(
                (r for r in self.roles.values() if r.name.lower() == role.name.lower()),
                None,
            )
            if existing_role is not None:
                existing_role.permissions = role.permissions
                existing_role.updated_at = utcnow()
                role = existing_role
            else:
                self.roles[role.id] = role
            principal.role_id = role.id
            principal.is_system_user = True
            return self.create_principal(principal)

    # -- custom roles -----------------------------------------------------

    def _role_name_taken(self, name: str, *, exclude_id: Optional[str] = None) -> bool:
        lowered = name.strip().lower()
        return any(
            r.name.strip().lower() == lowered and r.id != exclude_id
            for r in self.roles.values()
        )

    def create_role(self, role: CustomRole) -> CustomRole:
        with self._data_lock:
            if self._role_name_taken(role.name):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            self.roles[role.id] = role
            self._persist_state()
            return role

    def get_role(self, role_id: str) -> Optional[CustomRole]:
        with self._data_lock:
            return self.roles.get(role_id)

    def list_roles(self) -> List[CustomRole]:
        with self._data_lock:
            return sorted(self.roles.values(), key=lambda r: r.created_at)

    def update_role(self, role_id: str, **changes: Any) -> Optional[CustomRole]:
        with self._data_lock:
            current = self.roles.get(role_id)
            if not current:
                return None
            if changes.get("name") and self._role_name_taken(changes["name"], exclude_id=role_id):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            updated = replace(current, **changes, updated_at=utcnow())
            self.roles[role_id] = updated
            self._persist_state()
            return updated

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            for principal in self.principals.values():
                if principal.role_id == role_id:
                    principal.role_id = None
            self._persist_state()
            return True

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.principal_id not in self.principals:
                raise ConstraintViolation(
                    "session principal missing", {"principal_id": session.principal_id}
                )
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def deactivate_principal_sessions(
        self, principal_id: str, *, keep_session_id: Optional[str] = None
    ) -> List[str]:
        with self._data_lock:
            closed = []
            for sess in self.sessions.values():
                if sess.principal_id != principal_id or sess.id == keep_session_id:
                    continue
                if sess.is_active:
                    sess.is_active = False
                    closed.append(sess.id)
            if closed:
                self._persist_state()
            return closed

    # -- refresh tokens ---------------------------------------------------

    def save_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.principal_id not in self.principals:
                raise ConstraintViolation(
                    "token principal missing", {"principal_id": record.principal_id}
                )
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.token] = record
            self._persist_state()
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def revoke_refresh_token(self, token: str, at: datetime) -> bool:
        """Mark ``token`` revoked; False when it was missing or already revoked."""
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.is_revoked:
                return False
            record.is_revoked = True
            record.revoked_at = at
            self._persist_state()
            return True

    def revoke_principal_refresh_tokens(self, principal_id: str, at: datetime) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.principal_id == principal_id and not record.is_revoked:
                    record.is_revoked = True
                    record.revoked_at = at
                    count += 1
            if count:
                self._persist_state()
            return count

    # -- activity log -----------------------------------------------------

    def record_activity(self, entry: ActivityLog) -> ActivityLog:
        with self._data_lock:
            self.activity.append(entry)
            self._persist_state()
            return entry

    def list_activity(
        self, *, principal_id: Optional[str] = None, limit: int = 100
    ) -> List[ActivityLog]:
        with self._data_lock:
            entries = [
                e for e in self.activity if not principal_id or e.principal_id == principal_id
            ]
            return list(reversed(entries))[:limit]

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "principals": [_serialize(p) for p in self.principals.values()],
            "roles": [_serialize(r) for r in self.roles.values()],
            "sessions": [_serialize(s) for s in self.sessions.values()],
            "refresh_tokens": [_serialize(t) for t in self.refresh_tokens.values()],
            "activity": [_serialize(a) for a in self.activity],
            "dependents": {
                pid: {kind: sorted(refs) for kind, refs in kinds.items()}
                for pid, kinds in self.dependents.items()
            },
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: _deserialize(Principal, p) for p in data.get("principals", [])
        }
        self.roles = {r["id"]: _deserialize(CustomRole, r) for r in data.get("roles", [])}
        self.sessions = {
            s["id"]: _deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.refresh_tokens = {
            t["token"]: _deserialize(RefreshToken, t) for t in data.get("refresh_tokens", [])
        }
        self.activity = [_deserialize(ActivityLog, a) for a in data.get("activity", [])]
        self.dependents = {
            pid: {kind: set(refs) for kind, refs in kinds.items()}
            for pid, kinds in data.get("dependents", {}).items()
        }
        self.logger.info("memory_store_loaded", principals=len(self.principals))
        return True
