from __future__ import annotations

from datetime import timedelta
from typing import Any, List, Optional

from backoffice.config import Settings
from backoffice.logging import get_logger
from backoffice.storage.models import Principal, Session, SessionData, utcnow


class SessionStore:
    """Cache-aside session lookup over the durable session table.

    The durable tier is the source of truth. The fast tier (Redis) is only
    ever populated from it, and its failures degrade to a cache miss.
    """

    def __init__(self, store: Any, cache: Optional[Any], settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = get_logger(__name__)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(days=self.settings.session_ttl_days)

    async def create(
        self,
        principal: Principal,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            principal.id,
            self.session_ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.store.create_session(session)
        data = SessionData(
            principal_id=principal.id,
            email=principal.email,
            role=principal.role,
            expires_at=session.expires_at,
        )
        await self.put(session.id, data, session.remaining_seconds())
        return session

    async def get(self, session_id: Optional[str]) -> Optional[SessionData]:
        if not session_id:
            return None
        now = utcnow()

        cached = await self._read_fast_tier(session_id)
        if cached is not None:
            if cached.expires_at is None or cached.expires_at > now:
                return cached
            await self._evict(session_id)

        session = self.store.get_session(session_id)
        if session is None or not session.is_valid(now):
            return None
        principal = self.store.get_principal(session.principal_id)
        if principal is None:
            return None
        data = SessionData(
            principal_id=principal.id,
            email=principal.email,
            role=principal.role,
            expires_at=session.expires_at,
        )
        remaining = session.remaining_seconds(now)
        if remaining > 0:
            await self.put(session_id, data, remaining)
        return data

    async def put(self, session_id: str, data: SessionData, ttl_seconds: int) -> None:
        if not self.cache or ttl_seconds <= 0:
            return
        try:
            await self.cache.set_session(session_id, data.to_dict(), ttl_seconds)
        except Exception as exc:
            self.logger.warning(
                "session_cache_write_failed", error=str(exc), error_type=type(exc).__name__
            )

    async def invalidate(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        changed = self.store.deactivate_session(session_id)
        await self._evict(session_id)
        if changed:
            self.logger.info("session_invalidated")

    async def invalidate_principal(
        self, principal_id: str, *, keep_session_id: Optional[str] = None
    ) -> List[str]:
        closed = self.store.deactivate_principal_sessions(
            principal_id, keep_session_id=keep_session_id
        )
        for session_id in closed:
            await self._evict(session_id)
        if closed:
            self.logger.info(
                "principal_sessions_invalidated", principal_id=principal_id, count=len(closed)
            )
        return closed

    async def _read_fast_tier(self, session_id: str) -> Optional[SessionData]:
        if not self.cache:
            return None
        try:
            payload = await self.cache.get_session(session_id)
        except Exception as exc:
            self.logger.warning(
                "session_cache_read_failed", error=str(exc), error_type=type(exc).__name__
            )
            return None
        if not payload:
            return None
        try:
            return SessionData.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.warning("session_cache_payload_invalid", error=str(exc))
            await self._evict(session_id)
            return None

    async def _evict(self, session_id: str) -> None:
        if not self.cache:
            return
        try:
            await self.cache.delete_session(session_id)
        except Exception as exc:
            self.logger.warning(
                "session_cache_delete_failed", error=str(exc), error_type=type(exc).__name__
            )
