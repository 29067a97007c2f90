from __future__ import annotations

import threading
import time
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from portalauth.config import get_settings, reset_settings_cache
from portalauth.logging import get_logger
from portalauth.service.auth import AuthService
from portalauth.service.email import EmailService
from portalauth.service.passwords import PasswordHashing
from portalauth.service.rate_limit import RateLimiters
from portalauth.service.recovery import PasswordRecoveryService
from portalauth.service.revocation import RevocationRegistry
from portalauth.service.rotation import RefreshRotator
from portalauth.service.security_questions import SecurityQuestionService
from portalauth.service.sessions import SessionManager
from portalauth.service.tokens import PASSWORD_RESET, REFRESH, TokenService
from portalauth.storage.memory import MemoryStore
from portalauth.storage.memory_cache import MemoryCache
from portalauth.storage.postgres import PostgresStore
from portalauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """``redis://:secret@host:6379`` becomes ``redis://:***@host:6379``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the singleton components used by the FastAPI app."""

    def __init__(self, *, clock=time.time):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    operation_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, refresh tokens, revocation and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions, revocations and "
                    "rate limits are process-local and valid for a single instance only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache(clock=clock)

        self.hashing = PasswordHashing()
        self.tokens = TokenService(self.settings, clock=clock)
        self.sessions = SessionManager(
            self.cache, ttl_seconds=self.tokens.ttl_seconds(REFRESH), clock=clock
        )
        self.revocation = RevocationRegistry(self.cache, clock=clock)
        self.rotator = RefreshRotator(self.tokens, self.sessions, self.revocation, self.cache)
        self.limiters = RateLimiters(self.cache, self.settings, clock=clock)
        self.questions = SecurityQuestionService(self.store, self.hashing)
        self.auth = AuthService(
            self.store,
            self.settings,
            tokens=self.tokens,
            sessions=self.sessions,
            revocation=self.revocation,
            rotator=self.rotator,
            limiters=self.limiters,
            questions=self.questions,
            hashing=self.hashing,
            clock=clock,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            reset_ttl_minutes=self.tokens.ttl_seconds(PASSWORD_RESET) // 60,
        )
        self.recovery = PasswordRecoveryService(
            self.store,
            self.tokens,
            self.questions,
            self.hashing,
            self.email,
            self.settings,
            request_limiter=self.limiters.password_reset_request,
            answer_limiter=self.limiters.security_question,
            revoke_all_sessions=self.auth.revoke_all_user_sessions,
            clock=clock,
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    async def sweep(self) -> Dict[str, int]:
        """One maintenance pass: stale revocations and finished reset tokens."""
        revocations = await self.revocation.sweep()
        reset_tokens = self.recovery.cleanup_expired()
        return {"revocations": revocations, "reset_tokens": reset_tokens}

    async def close(self) -> None:
        await self.cache.close()
        self.store.close()


_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = Runtime()
    return _runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from freshly read settings."""
    global _runtime
    with _runtime_lock:
        reset_settings_cache()
        _runtime = Runtime()
    return _runtime
