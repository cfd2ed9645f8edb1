import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="backoffice_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# No live Redis in tests: the session store runs durable-only and rate limits are off
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from backoffice.config import Settings  # noqa: E402
from backoffice.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeSessionCache:
    """Dict-backed stand-in for the Redis fast tier."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.ttls: Dict[str, int] = {}
        self.buckets: Dict[str, int] = {}

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        payload = self.sessions.get(session_id)
        return dict(payload) if payload is not None else None

    async def set_session(self, session_id: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self.sessions[session_id] = dict(payload)
        self.ttls[session_id] = ttl_seconds

    async def delete_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
        self.ttls.pop(session_id, None)

    async def check_rate_limit(self, key, limit, window_seconds, *, return_remaining=False, cost=1):
        used = self.buckets.get(key, 0) + cost
        self.buckets[key] = used
        allowed = used <= limit
        if return_remaining:
            return (allowed, max(0, limit - used), 0 if allowed else window_seconds)
        return allowed

    async def close(self) -> None:
        return None


class BrokenSessionCache(FakeSessionCache):
    """Fast tier whose every call fails, as during a Redis outage."""

    async def get_session(self, session_id):
        raise ConnectionError("redis unavailable")

    async def set_session(self, session_id, payload, ttl_seconds):
        raise ConnectionError("redis unavailable")

    async def delete_session(self, session_id):
        raise ConnectionError("redis unavailable")

    async def check_rate_limit(self, key, limit, window_seconds, *, return_remaining=False, cost=1):
        raise ConnectionError("redis unavailable")


@pytest.fixture
def settings():
    """Settings built directly, independent of the process environment."""
    return Settings(
        jwt_access_secret="Access-Secret-For-Automation-Only-0123456789",
        jwt_refresh_secret="Refresh-Secret-For-Automation-Only-9876543210",
        redis_url="",
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def fake_cache():
    return FakeSessionCache()


@pytest.fixture
def broken_cache():
    return BrokenSessionCache()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
