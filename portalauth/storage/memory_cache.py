from __future__ import annotations

import bisect
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from portalauth.storage.redis_cache import (
    BLACKLIST_PREFIX,
    REFRESH_PREFIX,
    SESSION_PREFIX,
    blacklist_key,
    rate_key,
    refresh_key,
    session_key,
    user_sessions_key,
)

WINDOW_PURGE_INTERVAL_MS = 1000


class MemoryCache:
    """In-process stand-in for :class:`RedisCache`.

    Every method takes the same mutex, so each call is atomic with respect to
    every other call in this process. The state is not shared between
    processes: it is only correct for a single instance and is used for
    tests and explicitly-enabled development fallback.

    ``clock`` returns epoch seconds and may be replaced to drive TTL expiry
    deterministically.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sets: Dict[str, Tuple[Set[str], Optional[float]]] = {}
        self._windows: Dict[str, List[float]] = {}
        # Rate window key -> epoch ms after which it holds no live instant
        self._window_expiry: Dict[str, float] = {}
        self._windows_purged_at = 0.0

    # internal helpers; callers must hold the lock

    def _get(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def _set(self, key: str, value: str, ttl_seconds: Optional[float]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._values[key] = (value, expires_at)

    def _members(self, key: str) -> Set[str]:
        entry = self._sets.get(key)
        if entry is None:
            return set()
        members, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._sets[key]
            return set()
        return members

    def _live_keys(self, prefix: str) -> List[str]:
        return [key for key in list(self._values) if key.startswith(prefix) and self._get(key) is not None]

    def _purge_windows(self, now_ms: float, *, force: bool = False) -> None:
        if not force and now_ms - self._windows_purged_at < WINDOW_PURGE_INTERVAL_MS:
            return
        self._windows_purged_at = now_ms
        for key in [k for k, expires in self._window_expiry.items() if expires <= now_ms]:
            del self._window_expiry[key]
            self._windows.pop(key, None)

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()
            self._windows.clear()
            self._window_expiry.clear()

    # Sessions partition

    async def put_session(
        self, session_id: str, user_id: str, payload: str, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(session_key(session_id), payload, ttl_seconds)
            members = self._members(user_sessions_key(user_id))
            members.add(session_id)
            self._sets[user_sessions_key(user_id)] = (members, self._clock() + ttl_seconds)

    async def get_session(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._get(session_key(session_id))

    async def touch_session(
        self, session_id: str, user_id: str, payload: str, ttl_seconds: int
    ) -> bool:
        with self._lock:
            if self._get(session_key(session_id)) is None:
                return False
            self._set(session_key(session_id), payload, ttl_seconds)
            members = self._members(user_sessions_key(user_id))
            if members:
                self._sets[user_sessions_key(user_id)] = (members, self._clock() + ttl_seconds)
            return True

    async def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        with self._lock:
            existed = self._get(session_key(session_id)) is not None
            self._values.pop(session_key(session_id), None)
            if user_id:
                self._members(user_sessions_key(user_id)).discard(session_id)
            return existed

    async def user_session_ids(self, user_id: str) -> List[str]:
        with self._lock:
            return sorted(self._members(user_sessions_key(user_id)))

    async def forget_user_sessions(self, user_id: str, session_ids: List[str]) -> None:
        with self._lock:
            members = self._members(user_sessions_key(user_id))
            members.difference_update(session_ids)

    async def scan_sessions(self) -> List[Tuple[str, str]]:
        with self._lock:
            return [
                (key[len(SESSION_PREFIX):], self._values[key][0])
                for key in self._live_keys(SESSION_PREFIX)
            ]

    # Refresh-token partition

    async def set_refresh(
        self, user_id: str, session_id: str, value: str, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(refresh_key(user_id, session_id), value, ttl_seconds)

    async def get_refresh(self, user_id: str, session_id: str) -> Optional[str]:
        with self._lock:
            return self._get(refresh_key(user_id, session_id))

    async def compare_and_swap_refresh(
        self,
        user_id: str,
        session_id: str,
        expected: str,
        replacement: str,
        ttl_seconds: int,
    ) -> bool:
        key = refresh_key(user_id, session_id)
        with self._lock:
            if self._get(key) != expected:
                return False
            self._set(key, replacement, ttl_seconds)
            return True

    async def delete_refresh(self, user_id: str, session_id: str) -> None:
        with self._lock:
            self._values.pop(refresh_key(user_id, session_id), None)

    # Revocation partition

    async def add_revocation(self, identifier: str, expires_at: int) -> bool:
        with self._lock:
            if expires_at <= self._clock():
                return False
            self._values[blacklist_key(identifier)] = (str(expires_at), float(expires_at))
        return True

    async def any_revoked(self, *identifiers: str) -> bool:
        with self._lock:
            return any(self._get(blacklist_key(i)) is not None for i in identifiers)

    async def sweep_revocations(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        removed = 0
        with self._lock:
            for key in [k for k in self._values if k.startswith(BLACKLIST_PREFIX)]:
                value, expires_at = self._values[key]
                try:
                    stale = float(value) <= now
                except ValueError:
                    stale = False
                if expires_at is None or expires_at <= now or stale:
                    del self._values[key]
                    removed += 1
        return removed

    # Rate windows

    async def sliding_window_hit(
        self, bucket: str, identity: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        key = rate_key(bucket, identity)
        with self._lock:
            self._purge_windows(now_ms)
            instants = self._windows.setdefault(key, [])
            cutoff = bisect.bisect_right(instants, now_ms - window_ms)
            del instants[:cutoff]
            if len(instants) < limit:
                bisect.insort(instants, now_ms)
                self._window_expiry[key] = max(self._window_expiry.get(key, 0), now_ms + window_ms)
                return True, len(instants), 0
            retry_after = int(instants[0] + window_ms - now_ms)
            return False, len(instants), max(0, retry_after)

    async def reset_window(self, bucket: str, identity: str) -> None:
        with self._lock:
            self._windows.pop(rate_key(bucket, identity), None)
            self._window_expiry.pop(rate_key(bucket, identity), None)

    # Stats

    async def stats(self) -> Dict[str, int]:
        with self._lock:
            self._purge_windows(self._clock() * 1000, force=True)
            return {
                "sessions": len(self._live_keys(SESSION_PREFIX)),
                "refresh_tokens": len(self._live_keys(REFRESH_PREFIX)),
                "revocations": len(self._live_keys(BLACKLIST_PREFIX)),
                "rate_windows": sum(1 for instants in self._windows.values() if instants),
            }
