from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from portalauth.logging import get_logger, log_security_event
from portalauth.service.errors import (
    SessionExpiredError,
    TokenReuseDetectedError,
    TokenRevokedError,
)
from portalauth.service.revocation import RevocationRegistry
from portalauth.service.sessions import SessionManager
from portalauth.service.tokens import ACCESS, REFRESH, IssuedToken, RefreshClaims, TokenService
from portalauth.storage.models import Session

logger = get_logger(__name__)


class RefreshStore(Protocol):
    async def set_refresh(
        self, user_id: str, session_id: str, value: str, ttl_seconds: int
    ) -> None: ...

    async def get_refresh(self, user_id: str, session_id: str) -> Optional[str]: ...

    async def compare_and_swap_refresh(
        self,
        user_id: str,
        session_id: str,
        expected: str,
        replacement: str,
        ttl_seconds: int,
    ) -> bool: ...

    async def delete_refresh(self, user_id: str, session_id: str) -> None: ...


@dataclass
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken
    session: Session

    @property
    def expires_in(self) -> int:
        return self.access.expires_in


RotationCheck = Callable[[RefreshClaims, Session], Awaitable[None]]


class RefreshRotator:
    """Exchanges a refresh token for a new access/refresh pair.

    At most one refresh value is live per ``(user_id, session_id)``. The
    replacement is a single compare-and-swap against the presented value,
    so of several concurrent rotations with the same token exactly one
    wins and keeps a usable pair; the others fail with
    ``TokenReuseDetectedError`` and change nothing. A later replay of a
    rotated token is treated as token theft: the session is revoked and its
    refresh entry deleted.
    """

    def __init__(
        self,
        tokens: TokenService,
        sessions: SessionManager,
        revocation: RevocationRegistry,
        store: RefreshStore,
    ) -> None:
        self.tokens = tokens
        self.sessions = sessions
        self.revocation = revocation
        self.store = store

    @property
    def refresh_ttl(self) -> int:
        return self.tokens.ttl_seconds(REFRESH)

    def _mint_pair(self, session: Session, token_version: int) -> TokenPair:
        access = self.tokens.issue_access_token(
            user_id=session.user_id,
            email=session.email,
            role=session.role,
            organizational_unit_id=session.organizational_unit_id,
            session_id=session.session_id,
        )
        refresh = self.tokens.issue_refresh_token(
            session.user_id, session.session_id, token_version
        )
        return TokenPair(access=access, refresh=refresh, session=session)

    async def register(self, session: Session) -> TokenPair:
        """Mint the first pair for a fresh session and store its refresh value."""
        pair = self._mint_pair(session, 1)
        await self.store.set_refresh(
            session.user_id, session.session_id, pair.refresh.token, self.refresh_ttl
        )
        return pair

    async def rotate(
        self, presented: str, *, check: Optional[RotationCheck] = None
    ) -> TokenPair:
        claims = self.tokens.verify_refresh(presented)

        stored = await self.store.get_refresh(claims.user_id, claims.session_id)
        if stored is None and await self.revocation.is_session_revoked(claims.session_id):
            # Session ended by logout or password reset, not by a replay
            raise TokenRevokedError("session has been revoked")
        if stored is None or stored != presented:
            await self._handle_reuse(claims, reason="absent" if stored is None else "mismatch")

        session = await self.sessions.find(claims.session_id)
        if session is None or session.user_id != claims.user_id:
            await self.store.delete_refresh(claims.user_id, claims.session_id)
            raise SessionExpiredError("session has ended")

        if check is not None:
            await check(claims, session)

        pair = self._mint_pair(session, claims.token_version + 1)
        swapped = await self.store.compare_and_swap_refresh(
            claims.user_id,
            claims.session_id,
            presented,
            pair.refresh.token,
            self.refresh_ttl,
        )
        if not swapped:
            # A concurrent rotation of the same token won; its pair stays valid
            log_security_event(
                "refresh_rotation_conflict",
                user_id=claims.user_id,
                session_id=claims.session_id,
                jti=claims.jti,
                token_version=claims.token_version,
            )
            raise TokenReuseDetectedError("refresh token has already been used")

        if not await self.sessions.touch(session):
            await self.store.delete_refresh(claims.user_id, claims.session_id)
            raise SessionExpiredError("session has ended")
        logger.info(
            "refresh_rotated",
            user_id=claims.user_id,
            session_id=claims.session_id,
            token_version=claims.token_version + 1,
        )
        return pair

    async def _handle_reuse(self, claims: RefreshClaims, *, reason: str) -> None:
        log_security_event(
            "refresh_token_reuse_detected",
            user_id=claims.user_id,
            session_id=claims.session_id,
            jti=claims.jti,
            token_version=claims.token_version,
            reason=reason,
        )
        # Revoke before deleting so in-flight access tokens are already rejected
        await self.revocation.revoke_session(claims.session_id, self.tokens.ttl_seconds(ACCESS))
        await self.store.delete_refresh(claims.user_id, claims.session_id)
        await self.sessions.delete(claims.session_id, claims.user_id)
        raise TokenReuseDetectedError("refresh token has already been used")

    async def discard(self, user_id: str, session_id: str) -> None:
        await self.store.delete_refresh(user_id, session_id)
