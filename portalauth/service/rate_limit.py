from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Protocol, Tuple

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.errors import RateLimitExceededError

logger = get_logger(__name__)


class RateWindowStore(Protocol):
    async def sliding_window_hit(
        self, bucket: str, identity: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]: ...

    async def reset_window(self, bucket: str, identity: str) -> None: ...


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int
    reset_at: int

    def apply_headers(self, response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(self.remaining)
        response.headers["X-RateLimit-Reset"] = str(self.reset_at)
        if not self.allowed:
            response.headers["Retry-After"] = str(self.retry_after)


class SlidingWindowRateLimiter:
    """Per-identity sliding-window admission control.

    Admits a call iff fewer than ``limit`` admitted calls fall inside the
    trailing ``window_seconds``. The prune, count and record steps run as
    one atomic store operation, so concurrent calls for the same identity
    cannot both take the last slot.
    """

    def __init__(
        self,
        store: RateWindowStore,
        name: str,
        *,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit < 1 or window_seconds <= 0:
            raise ValueError("limit and window must be positive")
        self.store = store
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    async def hit(self, identity: str) -> RateLimitDecision:
        now = self._clock()
        window_ms = int(self.window_seconds * 1000)
        allowed, count, retry_after_ms = await self.store.sliding_window_hit(
            self.name, identity, self.limit, window_ms, int(now * 1000)
        )
        retry_after = max(1, math.ceil(retry_after_ms / 1000)) if not allowed else 0
        return RateLimitDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            retry_after=retry_after,
            reset_at=int(now + (retry_after if not allowed else self.window_seconds)),
        )

    async def allow(self, identity: str) -> bool:
        return (await self.hit(identity)).allowed

    async def enforce(self, identity: str) -> RateLimitDecision:
        decision = await self.hit(identity)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                limiter=self.name,
                retry_after=decision.retry_after,
            )
            raise RateLimitExceededError(
                "too many requests, try again later",
                retry_after=decision.retry_after,
                detail={"limiter": self.name},
            )
        return decision

    async def reset(self, identity: str) -> None:
        await self.store.reset_window(self.name, identity)


class RateLimiters:
    """The named limiter instances used by the service."""

    def __init__(
        self,
        store: RateWindowStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.global_ip = SlidingWindowRateLimiter(
            store,
            "global",
            limit=settings.global_rate_limit,
            window_seconds=settings.global_rate_window.total_seconds(),
            clock=clock,
        )
        self.auth = SlidingWindowRateLimiter(
            store,
            "auth",
            limit=settings.auth_rate_limit,
            window_seconds=settings.auth_rate_window.total_seconds(),
            clock=clock,
        )
        self.password_reset_request = SlidingWindowRateLimiter(
            store,
            "password_reset_request",
            limit=settings.reset_request_rate_limit,
            window_seconds=settings.reset_request_rate_window.total_seconds(),
            clock=clock,
        )
        self.security_question = SlidingWindowRateLimiter(
            store,
            "security_question",
            limit=settings.security_question_rate_limit,
            window_seconds=settings.security_question_rate_window.total_seconds(),
            clock=clock,
        )
