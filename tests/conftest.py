import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before portalauth modules read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="portalauth_test_")
os.environ.setdefault("SECRETS_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "access-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "refresh-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("RESET_TOKEN_SECRET", "reset-secret-for-tests-only-0123456789abcdef")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portalauth.config import Settings  # noqa: E402
from portalauth.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Manually advanced clock shared by components under test."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings.from_env()


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


@pytest.fixture
def fast_hashing():
    from argon2 import PasswordHasher, Type

    from portalauth.service.passwords import PasswordHashing

    return PasswordHashing(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def components(clock, settings, fast_hashing):
    """Every auth component wired over in-memory stores and a fake clock."""
    from types import SimpleNamespace
    from unittest.mock import MagicMock

    from portalauth.service.auth import AuthService
    from portalauth.service.rate_limit import RateLimiters
    from portalauth.service.recovery import PasswordRecoveryService
    from portalauth.service.revocation import RevocationRegistry
    from portalauth.service.rotation import RefreshRotator
    from portalauth.service.security_questions import SecurityQuestionService
    from portalauth.service.sessions import SessionManager
    from portalauth.service.tokens import REFRESH, TokenService
    from portalauth.storage.memory import MemoryStore
    from portalauth.storage.memory_cache import MemoryCache

    store = MemoryStore()
    cache = MemoryCache(clock=clock)
    tokens = TokenService(settings, clock=clock)
    sessions = SessionManager(cache, ttl_seconds=tokens.ttl_seconds(REFRESH), clock=clock)
    revocation = RevocationRegistry(cache, clock=clock)
    rotator = RefreshRotator(tokens, sessions, revocation, cache)
    limiters = RateLimiters(cache, settings, clock=clock)
    questions = SecurityQuestionService(store, fast_hashing)
    auth = AuthService(
        store,
        settings,
        tokens=tokens,
        sessions=sessions,
        revocation=revocation,
        rotator=rotator,
        limiters=limiters,
        questions=questions,
        hashing=fast_hashing,
        clock=clock,
    )
    email = MagicMock()
    email.send_password_reset.return_value = True
    email.send_password_changed.return_value = True
    recovery = PasswordRecoveryService(
        store,
        tokens,
        questions,
        fast_hashing,
        email,
        settings,
        request_limiter=limiters.password_reset_request,
        answer_limiter=limiters.security_question,
        revoke_all_sessions=auth.revoke_all_user_sessions,
        clock=clock,
    )
    return SimpleNamespace(
        store=store,
        cache=cache,
        tokens=tokens,
        sessions=sessions,
        revocation=revocation,
        rotator=rotator,
        limiters=limiters,
        questions=questions,
        auth=auth,
        email=email,
        recovery=recovery,
        clock=clock,
        hashing=fast_hashing,
    )
