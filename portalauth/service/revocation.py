from __future__ import annotations

import time
from typing import Callable, Optional, Protocol

from portalauth.logging import get_logger

logger = get_logger(__name__)

SESSION_MARKER = "session:"


class RevocationStore(Protocol):
    async def add_revocation(self, identifier: str, expires_at: int) -> bool: ...

    async def any_revoked(self, *identifiers: str) -> bool: ...

    async def sweep_revocations(self, now: Optional[float] = None) -> int: ...


class RevocationRegistry:
    """Token identifiers that must be rejected while still signed and unexpired.

    Every entry expires at the absolute ``exp`` of what it revokes, so it
    covers the token for exactly its remaining life, however short;
    :meth:`sweep` only reclaims space for entries the store failed to
    expire. Store failures propagate as ``StoreUnavailableError``: a
    revocation check never fails open.
    """

    def __init__(self, store: RevocationStore, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    async def revoke(self, jti: str, exp: int) -> bool:
        """Revoke a single token. Revoking an already-expired token is a no-op."""
        if exp <= self._clock():
            return False
        written = await self.store.add_revocation(jti, int(exp))
        logger.info("token_revoked", jti=jti, expires_at=int(exp))
        return written

    async def revoke_session(self, session_id: str, ttl_seconds: int) -> bool:
        """Reject every access token bound to ``session_id`` for ``ttl_seconds``.

        ``ttl_seconds`` should be the access-token lifetime so that tokens
        minted just before revocation are covered until they expire.
        """
        if ttl_seconds <= 0:
            return False
        exp = int(self._clock()) + ttl_seconds
        written = await self.store.add_revocation(f"{SESSION_MARKER}{session_id}", exp)
        logger.info("session_revoked", session_id=session_id, ttl=ttl_seconds)
        return written

    async def is_revoked(self, jti: str, session_id: Optional[str] = None) -> bool:
        identifiers = [jti]
        if session_id:
            identifiers.append(f"{SESSION_MARKER}{session_id}")
        return await self.store.any_revoked(*identifiers)

    async def is_session_revoked(self, session_id: str) -> bool:
        return await self.store.any_revoked(f"{SESSION_MARKER}{session_id}")

    async def sweep(self) -> int:
        removed = await self.store.sweep_revocations(self._clock())
        if removed:
            logger.info("revocation_sweep", removed=removed)
        return removed
