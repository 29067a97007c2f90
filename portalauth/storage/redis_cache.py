from __future__ import annotations

import asyncio
import hashlib
import time
import uuid
from typing import Any, Awaitable, Dict, List, Optional, Tuple, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from portalauth.logging import get_logger
from portalauth.service.errors import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")

SESSION_PREFIX = "session:"
USER_SESSIONS_PREFIX = "user_sessions:"
REFRESH_PREFIX = "refresh:"
BLACKLIST_PREFIX = "blacklist:"
RATE_PREFIX = "rate:"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def user_sessions_key(user_id: str) -> str:
    return f"{USER_SESSIONS_PREFIX}{user_id}"


def refresh_key(user_id: str, session_id: str) -> str:
    return f"{REFRESH_PREFIX}{user_id}:{session_id}"


def blacklist_key(identifier: str) -> str:
    return f"{BLACKLIST_PREFIX}{identifier}"


def rate_key(bucket: str, identity: str) -> str:
    """Hash the identity so caller-controlled text never shapes the key."""
    digest = hashlib.sha256(identity.encode()).hexdigest()
    return f"{RATE_PREFIX}{bucket}:{digest}"


class RedisCache:
    """Redis-backed key-value store for sessions, refresh tokens, revocations
    and rate windows.

    This is the authoritative store shared by every service instance. Every
    call is bounded by ``operation_timeout`` and any Redis failure surfaces as
    ``StoreUnavailableError`` so callers fail closed.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic sliding window: drop stale instants, count, admit and record
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count < limit then
  redis.call('ZADD', key, now, member)
  redis.call('PEXPIRE', key, window)
  return {1, count + 1, 0}
end

local retry_after = window
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
  retry_after = tonumber(oldest[2]) + window - now
end
return {0, count, retry_after}
"""

    # Refresh rotation: overwrite only if the stored value is the presented one
    _COMPARE_AND_SWAP_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and current == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
  return 1
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._compare_and_swap = self.client.register_script(
            self._COMPARE_AND_SWAP_SCRIPT
        )

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.error("store_timeout", operation=operation, timeout=self.operation_timeout)
            raise StoreUnavailableError(
                "session store timed out", detail={"operation": operation}
            ) from exc
        except (RedisError, OSError) as exc:
            logger.error("store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailableError(
                "session store unavailable", detail={"operation": operation}
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        from redis import Redis

        # A short-lived sync client avoids binding the async pool to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self._run("ping", self.client.ping()))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Sessions partition
    # ------------------------------------------------------------------

    async def put_session(
        self, session_id: str, user_id: str, payload: str, ttl_seconds: int
    ) -> None:
        async def _put() -> None:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(session_key(session_id), payload, ex=ttl_seconds)
            pipe.sadd(user_sessions_key(user_id), session_id)
            pipe.expire(user_sessions_key(user_id), ttl_seconds)
            await pipe.execute()

        await self._run("put_session", _put())

    async def get_session(self, session_id: str) -> Optional[str]:
        return await self._run("get_session", self.client.get(session_key(session_id)))

    async def touch_session(
        self, session_id: str, user_id: str, payload: str, ttl_seconds: int
    ) -> bool:
        """Rewrite a live session and reset its TTL; never resurrects a deleted one."""

        async def _touch() -> bool:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(session_key(session_id), payload, ex=ttl_seconds, xx=True)
            pipe.expire(user_sessions_key(user_id), ttl_seconds)
            written, _ = await pipe.execute()
            return bool(written)

        return await self._run("touch_session", _touch())

    async def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        async def _delete() -> bool:
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(session_key(session_id))
            if user_id:
                pipe.srem(user_sessions_key(user_id), session_id)
            results = await pipe.execute()
            return bool(results[0])

        return await self._run("delete_session", _delete())

    async def user_session_ids(self, user_id: str) -> List[str]:
        members = await self._run(
            "user_session_ids", self.client.smembers(user_sessions_key(user_id))
        )
        return sorted(members or [])

    async def forget_user_sessions(self, user_id: str, session_ids: List[str]) -> None:
        if not session_ids:
            return
        await self._run(
            "forget_user_sessions",
            self.client.srem(user_sessions_key(user_id), *session_ids),
        )

    async def scan_sessions(self) -> List[Tuple[str, str]]:
        """Return ``(session_id, payload)`` for every live session.

        Walks the whole keyspace with SCAN, so cost is O(total sessions).
        """

        async def _scan() -> List[Tuple[str, str]]:
            keys = [key async for key in self.client.scan_iter(match=f"{SESSION_PREFIX}*", count=500)]
            if not keys:
                return []
            values = await self.client.mget(keys)
            return [
                (key[len(SESSION_PREFIX):], value)
                for key, value in zip(keys, values)
                if value is not None
            ]

        return await self._run("scan_sessions", _scan())

    # ------------------------------------------------------------------
    # Refresh-token partition
    # ------------------------------------------------------------------

    async def set_refresh(
        self, user_id: str, session_id: str, value: str, ttl_seconds: int
    ) -> None:
        await self._run(
            "set_refresh",
            self.client.set(refresh_key(user_id, session_id), value, ex=ttl_seconds),
        )

    async def get_refresh(self, user_id: str, session_id: str) -> Optional[str]:
        return await self._run("get_refresh", self.client.get(refresh_key(user_id, session_id)))

    async def compare_and_swap_refresh(
        self,
        user_id: str,
        session_id: str,
        expected: str,
        replacement: str,
        ttl_seconds: int,
    ) -> bool:
        result = await self._run(
            "compare_and_swap_refresh",
            self._compare_and_swap(
                keys=[refresh_key(user_id, session_id)],
                args=[expected, replacement, ttl_seconds],
            ),
        )
        return bool(int(result))

    async def delete_refresh(self, user_id: str, session_id: str) -> None:
        await self._run("delete_refresh", self.client.delete(refresh_key(user_id, session_id)))

    # ------------------------------------------------------------------
    # Revocation partition
    # ------------------------------------------------------------------

    async def add_revocation(self, identifier: str, expires_at: int) -> bool:
        """Write a revocation entry that expires at the revoked token's ``exp``."""
        await self._run(
            "add_revocation",
            self.client.set(blacklist_key(identifier), str(expires_at), exat=int(expires_at)),
        )
        return True

    async def any_revoked(self, *identifiers: str) -> bool:
        if not identifiers:
            return False
        keys = [blacklist_key(identifier) for identifier in identifiers]
        return bool(await self._run("any_revoked", self.client.exists(*keys)))

    async def sweep_revocations(self, now: Optional[float] = None) -> int:
        """Delete revocation entries that carry no TTL or are already past expiry."""
        now = time.time() if now is None else now

        async def _sweep() -> int:
            removed = 0
            async for key in self.client.scan_iter(match=f"{BLACKLIST_PREFIX}*", count=500):
                ttl = await self.client.ttl(key)
                value = await self.client.get(key)
                stale = ttl == -1
                if value is not None:
                    try:
                        stale = stale or float(value) <= now
                    except ValueError:
                        stale = stale or ttl < 0
                if stale:
                    removed += int(await self.client.delete(key))
            return removed

        return await self._run("sweep_revocations", _sweep())

    # ------------------------------------------------------------------
    # Rate windows
    # ------------------------------------------------------------------

    async def sliding_window_hit(
        self, bucket: str, identity: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        """Atomically admit or reject one request.

        Returns ``(allowed, count_in_window, retry_after_ms)``.
        """
        allowed, count, retry_after = await self._run(
            "sliding_window_hit",
            self._sliding_window(
                keys=[rate_key(bucket, identity)],
                args=[now_ms, window_ms, limit, f"{now_ms}-{uuid.uuid4().hex}"],
            ),
        )
        return bool(int(allowed)), int(count), max(0, int(retry_after))

    async def reset_window(self, bucket: str, identity: str) -> None:
        await self._run("reset_window", self.client.delete(rate_key(bucket, identity)))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def stats(self) -> Dict[str, int]:
        async def _count(pattern: str) -> int:
            return sum([1 async for _ in self.client.scan_iter(match=pattern, count=1000)])

        async def _stats() -> Dict[str, int]:
            return {
                "sessions": await _count(f"{SESSION_PREFIX}*"),
                "refresh_tokens": await _count(f"{REFRESH_PREFIX}*"),
                "revocations": await _count(f"{BLACKLIST_PREFIX}*"),
                "rate_windows": await _count(f"{RATE_PREFIX}*"),
            }

        return await self._run("stats", _stats())
