from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

# Serializes concurrent first-admin setup across processes
_BOOTSTRAP_LOCK_KEY = 0x6B6F_0001

_PRINCIPAL_COLUMNS = {
    "email",
    "password_hash",
    "display_name",
    "role",
    "role_id",
    "status",
    "login_method",
    "allowed_ips",
    "is_system_user",
}
_ROLE_COLUMNS = {"name", "description", "permissions"}


def _principal_from_row(row: Dict[str, Any]) -> Principal:
    allowed = row.get("allowed_ips") or []
    if isinstance(allowed, str):
        allowed = json.loads(allowed)
    return Principal(
        id=str(row["id"]),
        email=str(row["email"]),
        password_hash=row["password_hash"],
        display_name=row["display_name"],
        role=row.get("role") or "",
        role_id=str(row["role_id"]) if row.get("role_id") else None,
        status=row.get("status", "Active"),
        login_method=row.get("login_method", "General"),
        allowed_ips=list(allowed),
        last_login_at=row.get("last_login_at"),
        last_login_ip=row.get("last_login_ip"),
        is_system_user=bool(row.get("is_system_user")),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at"),
    )


def _role_from_row(row: Dict[str, Any]) -> CustomRole:
    return CustomRole(
        id=str(row["id"]),
        name=row["name"],
        description=row.get("description"),
        permissions=row.get("permissions"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at"),
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        principal_id=str(row["principal_id"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        is_active=bool(row.get("is_active")),
    )


def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        token=row["token"],
        principal_id=str(row["principal_id"]),
        expires_at=row["expires_at"],
        created_at=row.get("created_at") or utcnow(),
        is_revoked=bool(row.get("is_revoked")),
        revoked_at=row.get("revoked_at"),
        replaced_by=row.get("replaced_by"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
    )


def _json_or_none(value: Any) -> Optional[str]:
    # JSON text documents are stored as a JSON string; the resolver re-parses them
    if value is None:
        return None
    return json.dumps(value)


class PostgresStore:
    """Postgres-backed store for principals, roles, sessions and tokens."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        required_tables = [
            "principal",
            "principal_dependent",
            "custom_role",
            "auth_session",
            "refresh_token",
            "activity_log",
        ]
        with self._connect() as conn:
            missing = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_core.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    # -- principals -------------------------------------------------------

    def _insert_principal(self, conn, principal: Principal) -> None:
        conn.execute(
            """
            INSERT INTO principal (id, email, password_hash, display_name, role, role_id, status,
                                   login_method, allowed_ips, is_system_user, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                principal.id,
                principal.email,
                principal.password_hash,
                principal.display_name,
                principal.role,
                principal.role_id,
                principal.status,
                principal.login_method,
                json.dumps(principal.allowed_ips or []),
                principal.is_system_user,
                principal.created_at,
            ),
        )

    def create_principal(self, principal: Principal) -> Principal:
        principal.email = principal.email.strip().lower()
        try:
            with self._connect() as conn:
                self._insert_principal(conn, principal)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role does not exist", {"role_id": principal.role_id})
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return _principal_from_row(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE email = %s", ((email or "").strip().lower(),)
            ).fetchone()
        return _principal_from_row(row) if row else None

    def list_principals(
        self, *, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Principal]:
        query = "SELECT * FROM principal"
        params: List[Any] = []
        if status:
            query += " WHERE status = %s"
            params.append(status)
        query += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_principal_from_row(r) for r in rows]

    def update_principal(self, principal_id: str, **changes: Any) -> Optional[Principal]:
        unknown = set(changes) - _PRINCIPAL_COLUMNS
        if unknown:
            raise ValueError(f"unsupported principal fields: {sorted(unknown)}")
        if changes.get("email") is not None:
            changes["email"] = changes["email"].strip().lower()
        if "allowed_ips" in changes:
            changes["allowed_ips"] = json.dumps(changes["allowed_ips"] or [])
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = list(changes.values())
        if assignments:
            assignments += ", "
        assignments += "updated_at = %s"
        params.extend([utcnow(), principal_id])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE principal SET {assignments} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role does not exist", {"role_id": changes.get("role_id")})
        return _principal_from_row(row) if row else None

    def update_last_login(self, principal_id: str, at: datetime, ip_address: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE principal SET last_login_at = %s, last_login_ip = %s WHERE id = %s",
                (at, ip_address, principal_id),
            )

    def delete_principal(self, principal_id: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute("DELETE FROM principal WHERE id = %s", (principal_id,))
                return cur.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal still owns dependent records", {"principal_id": principal_id}
            )

    def record_dependent(self, principal_id: str, kind: str, ref_id: str) -> None:
        """Mark `ref_id` (a task or group membership) as owned by the principal.

        Called by the task and group modules when they assign records; while any
        remain, `delete_principal` refuses.
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO principal_dependent (principal_id, kind, ref_id)
                VALUES (%s, %s, %s)
                ON CONFLICT DO NOTHING
                """,
                (principal_id, kind, ref_id),
            )

    def release_dependent(self, principal_id: str, kind: str, ref_id: str) -> None:
        """Drop the ownership link once the record is reassigned or removed."""
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM principal_dependent WHERE principal_id = %s AND kind = %s AND ref_id = %s",
                (principal_id, kind, ref_id),
            )

    def count_dependents(self, principal_id: str) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT kind, count(*) AS total FROM principal_dependent
                WHERE principal_id = %s GROUP BY kind ORDER BY kind
                """,
                (principal_id,),
            ).fetchall()
        return {row["kind"]: int(row["total"]) for row in rows}

    def has_system_admin(self) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS (SELECT 1 FROM principal WHERE is_system_user) AS present"
            ).fetchone()
        return bool(row and row["present"])

    def bootstrap_admin(self, principal: Principal, role: CustomRole) -> Principal:
        """Create the first administrative principal and its role in one transaction."""
        principal.email = principal.email.strip().lower()
        principal.is_system_user = True
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute("SELECT pg_advisory_xact_lock(%s)", (_BOOTSTRAP_LOCK_KEY,))
                    row = conn.execute(
                        "SELECT EXISTS (SELECT 1 FROM principal WHERE is_system_user) AS present"
                    ).fetchone()
                    if row and row["present"]:
                        raise AlreadyInitialized("an administrative principal already exists")
                    existing = conn.execute(
                        "SELECT id FROM custom_role WHERE lower(name) = lower(%s)", (role.name,)
                    ).fetchone()
                    if existing:
                        role.id = str(existing["id"])
                        conn.execute(
                            "UPDATE custom_role SET permissions = %s, updated_at = %s WHERE id = %s",
                            (_json_or_none(role.permissions), utcnow(), role.id),
                        )
                    else:
                        conn.execute(
                            """
                            INSERT INTO custom_role (id, name, description, permissions, created_at)
                            VALUES (%s, %s, %s, %s, %s)
                            """,
                            (
                                role.id,
                                role.name,
                                role.description,
                                _json_or_none(role.permissions),
                                role.created_at,
                            ),
                        )
                    principal.role_id = role.id
                    self._insert_principal(conn, principal)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return principal

    # -- custom roles -----------------------------------------------------

    def create_role(self, role: CustomRole) -> CustomRole:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO custom_role (id, name, description, permissions, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        role.id,
                        role.name,
                        role.description,
                        _json_or_none(role.permissions),
                        role.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return role

    def get_role(self, role_id: str) -> Optional[CustomRole]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM custom_role WHERE id = %s", (role_id,)).fetchone()
        return _role_from_row(row) if row else None

    def list_roles(self) -> List[CustomRole]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM custom_role ORDER BY created_at").fetchall()
        return [_role_from_row(r) for r in rows]

    def update_role(self, role_id: str, **changes: Any) -> Optional[CustomRole]:
        unknown = set(changes) - _ROLE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported role fields: {sorted(unknown)}")
        if "permissions" in changes:
            changes["permissions"] = _json_or_none(changes["permissions"])
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = list(changes.values())
        if assignments:
            assignments += ", "
        assignments += "updated_at = %s"
        params.extend([utcnow(), role_id])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE custom_role SET {assignments} WHERE id = %s RETURNING *", params
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return _role_from_row(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM custom_role WHERE id = %s", (role_id,))
            return cur.rowcount > 0

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, principal_id, ip_address, user_agent, created_at, expires_at, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.principal_id,
                        session.ip_address,
                        session.user_agent,
                        session.created_at,
                        session.expires_at,
                        session.is_active,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session principal missing", {"principal_id": session.principal_id}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE id = %s AND is_active",
                (session_id,),
            )
            return cur.rowcount > 0

    def deactivate_principal_sessions(
        self, principal_id: str, *, keep_session_id: Optional[str] = None
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE
                WHERE principal_id = %s AND is_active AND id IS DISTINCT FROM %s
                RETURNING id
                """,
                (principal_id, keep_session_id),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    # -- refresh tokens ---------------------------------------------------

    def save_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token, principal_id, expires_at, created_at, is_revoked,
                                               revoked_at, replaced_by, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.token,
                        record.principal_id,
                        record.expires_at,
                        record.created_at,
                        record.is_revoked,
                        record.revoked_at,
                        record.replaced_by,
                        record.ip_address,
                        record.user_agent,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "token principal missing", {"principal_id": record.principal_id}
            )
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return _token_from_row(row) if row else None

    def revoke_refresh_token(self, token: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE token = %s AND NOT is_revoked
                """,
                (at, token),
            )
            return cur.rowcount > 0

    def revoke_principal_refresh_tokens(self, principal_id: str, at: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE principal_id = %s AND NOT is_revoked
                """,
                (at, principal_id),
            )
            return cur.rowcount

    # -- activity log -----------------------------------------------------

    def record_activity(self, entry: ActivityLog) -> ActivityLog:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activity_log (id, principal_id, type, description, ip_address, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.principal_id,
                    entry.type,
                    entry.description,
                    entry.ip_address,
                    entry.created_at,
                ),
            )
        return entry

    def list_activity(
        self, *, principal_id: Optional[str] = None, limit: int = 100
    ) -> List[ActivityLog]:
        query = "SELECT * FROM activity_log"
        params: List[Any] = []
        if principal_id:
            query += " WHERE principal_id = %s"
            params.append(principal_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ActivityLog(
                id=str(row["id"]),
                principal_id=str(row["principal_id"]) if row.get("principal_id") else None,
                type=row["type"],
                description=row["description"],
                ip_address=row.get("ip_address"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
