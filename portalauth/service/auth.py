from __future__ import annotations

import re
import time
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from portalauth.config import Settings
from portalauth.logging import get_logger, log_security_event
from portalauth.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    SessionExpiredError,
    TokenRevokedError,
    ValidationError,
)
from portalauth.service.passwords import PasswordHashing, check_password_policy
from portalauth.service.rate_limit import RateLimiters
from portalauth.service.revocation import RevocationRegistry
from portalauth.service.rotation import RefreshRotator, TokenPair
from portalauth.service.security_questions import SecurityQuestionService
from portalauth.service.sessions import SessionManager
from portalauth.service.tokens import ACCESS, AccessClaims, RefreshClaims, TokenService
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import DEFAULT_ROLE, ROLES, Session, User, from_timestamp

logger = get_logger(__name__)

_USERNAME_PART = re.compile(r"[^a-z0-9]+")


def _fold(value: str) -> str:
    ascii_value = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode()
    return _USERNAME_PART.sub("", ascii_value.lower())


@dataclass
class AuthContext:
    """Identity attached to a request after its access token was accepted."""

    user: User
    session: Session
    claims: AccessClaims

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def role(self) -> str:
        return self.user.role


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair


def _issued_before_password_change(issued_at: int, user: User) -> bool:
    if user.password_changed_at is None:
        return False
    # Token iat has whole-second precision
    return issued_at < int(user.password_changed_at.timestamp())


class AuthService:
    """Registration, login, token refresh, logout and request authentication."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        tokens: TokenService,
        sessions: SessionManager,
        revocation: RevocationRegistry,
        rotator: RefreshRotator,
        limiters: RateLimiters,
        questions: SecurityQuestionService,
        hashing: Optional[PasswordHashing] = None,
        clock=time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.sessions = sessions
        self.revocation = revocation
        self.rotator = rotator
        self.limiters = limiters
        self.questions = questions
        self.hashing = hashing or PasswordHashing()
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return from_timestamp(self._clock())

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------

    def generate_username(self, first_name: str, last_name: str, email: str, unit_code: str) -> str:
        base = ".".join(
            part for part in (_fold(unit_code), _fold(first_name), _fold(last_name)) if part
        )
        if base and not self.store.username_exists(base):
            return base
        local = _fold(email.split("@", 1)[0])
        if local and not self.store.username_exists(local):
            return local
        stem = base or local or "user"
        for suffix in range(1, 100):
            candidate = f"{stem}{suffix}"
            if not self.store.username_exists(candidate):
                return candidate
        return f"{stem}{int(self._clock() * 1000) % 1_000_000}"

    async def register(
        self,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        organizational_unit_id: int,
        role: Optional[str] = None,
        security_questions: Optional[Sequence[Tuple[int, str]]] = None,
        ip_address: Optional[str] = None,
    ) -> User:
        await self.limiters.auth.enforce(f"register:{ip_address or email}")

        normalized = email.strip().lower()
        domain = normalized.rsplit("@", 1)[-1]
        allowed = self.settings.allowed_domains
        if allowed and domain not in allowed:
            raise ValidationError(
                "email domain is not allowed", detail={"field": "email"}
            )
        role = role or DEFAULT_ROLE
        if role not in ROLES:
            raise ValidationError("unknown role", detail={"field": "role", "allowed": list(ROLES)})
        first_name, last_name = (first_name or "").strip(), (last_name or "").strip()
        if not first_name or not last_name:
            raise ValidationError("first and last name are required", detail={"field": "name"})
        problems = check_password_policy(password)
        if problems:
            raise ValidationError(
                "password does not meet policy", detail={"field": "password", "errors": problems}
            )
        unit = self.store.get_organizational_unit(organizational_unit_id)
        if unit is None or not unit.is_active:
            raise ValidationError(
                "organizational unit is not available",
                detail={"field": "organizational_unit_id"},
            )
        if security_questions:
            self.questions.validate(security_questions)
        if self.store.get_user_by_email(normalized) is not None:
            raise ConflictError("email already registered", detail={"field": "email"})

        password_hash, algo = await self.hashing.hash_password_async(password)
        username = self.generate_username(first_name, last_name, normalized, unit.code)
        try:
            user = self.store.create_user(
                normalized,
                username,
                first_name,
                last_name,
                role=role,
                organizational_unit_id=unit.id,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.store.save_password(user.id, password_hash, algo, changed_at=self._now())
        if security_questions:
            await self.questions.setup(user.id, security_questions)
        self.logger.info("user_registered", user_id=user.id, role=role, unit=unit.code)
        return self.store.get_user(user.id) or user

    # ------------------------------------------------------------------
    # login / refresh / logout
    # ------------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        normalized = (email or "").strip().lower()
        await self.limiters.auth.enforce(f"login:{ip_address or normalized}")

        user = self.store.get_user_by_email(normalized)
        record = self.store.get_password_record(user.id) if user else None
        if user is None or record is None:
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError("invalid credentials")
        password_hash, algo = record
        if not await self.hashing.verify_password_async(password_hash, algo, password or ""):
            self.logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise InvalidCredentialsError("invalid credentials")
        if not user.is_active:
            raise AccountInactiveError("account is inactive")

        session = self.sessions.new_session(user, ip_address=ip_address, user_agent=user_agent)
        await self.sessions.create(session)
        pair = await self.rotator.register(session)
        self.store.record_login(user.id, self._now())
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.session_id)
        return LoginResult(user=user, tokens=pair)

    async def _check_refresh_owner(self, claims: RefreshClaims, session: Session) -> None:
        user = self.store.get_user(claims.user_id)
        if user is None:
            raise InvalidTokenError("refresh token subject no longer exists")
        if not user.is_active:
            raise AccountInactiveError("account is inactive")
        if _issued_before_password_change(claims.issued_at, user):
            raise TokenRevokedError("token predates the last password change")

    async def refresh(self, refresh_token: Optional[str], *, ip_address: Optional[str] = None) -> TokenPair:
        if not refresh_token:
            raise AuthenticationError("refresh token required")
        await self.limiters.auth.enforce(f"refresh:{ip_address or 'unknown'}")
        return await self.rotator.rotate(refresh_token, check=self._check_refresh_owner)

    async def _end_session(self, user_id: str, session_id: str) -> None:
        await self.revocation.revoke_session(session_id, self.tokens.ttl_seconds(ACCESS))
        await self.rotator.discard(user_id, session_id)
        await self.sessions.delete(session_id, user_id)

    async def logout(self, ctx: AuthContext, *, logout_all: bool = False) -> int:
        """End the caller's session, or every session of the caller.

        Revocation entries are written before session and refresh state is
        deleted. A request that already passed :meth:`authenticate` before
        the revocation write may still complete.
        """
        await self.revocation.revoke(ctx.claims.jti, ctx.claims.expires_at)
        if logout_all:
            return await self.revoke_all_user_sessions(ctx.user_id, reason="logout_all")
        await self._end_session(ctx.user_id, ctx.session_id)
        self.logger.info("logout", user_id=ctx.user_id, session_id=ctx.session_id)
        return 1

    async def revoke_all_user_sessions(self, user_id: str, *, reason: str) -> int:
        indexed = {s.session_id for s in await self.sessions.list_by_user(user_id)}
        scanned = set(await self.sessions.scan_by_user(user_id))
        session_ids = sorted(indexed | scanned)
        access_ttl = self.tokens.ttl_seconds(ACCESS)
        for session_id in session_ids:
            await self.revocation.revoke_session(session_id, access_ttl)
        for session_id in session_ids:
            await self.rotator.discard(user_id, session_id)
            await self.sessions.delete(session_id, user_id)
        log_security_event(
            "user_sessions_revoked", user_id=user_id, count=len(session_ids), reason=reason
        )
        return len(session_ids)

    # ------------------------------------------------------------------
    # request authentication
    # ------------------------------------------------------------------

    async def authenticate(self, bearer_token: Optional[str]) -> AuthContext:
        if not bearer_token:
            raise AuthenticationError("authentication required")
        claims = self.tokens.verify_access(bearer_token)
        if await self.revocation.is_revoked(claims.jti, claims.session_id):
            raise TokenRevokedError("token has been revoked")

        session = await self.sessions.find(claims.session_id)
        if session is None:
            raise SessionExpiredError("session has ended")
        if session.user_id != claims.user_id or session.email != claims.email:
            raise InvalidTokenError("token does not match session")

        user = self.store.get_user(claims.user_id)
        if user is None:
            raise InvalidTokenError("token subject no longer exists")
        if not user.is_active:
            raise AccountInactiveError("account is inactive")
        if _issued_before_password_change(claims.issued_at, user):
            raise TokenRevokedError("token predates the last password change")

        if not await self.sessions.touch(session):
            raise SessionExpiredError("session has ended")
        return AuthContext(user=user, session=session, claims=claims)

    @staticmethod
    def require_role(ctx: AuthContext, *roles: str) -> None:
        if ctx.role not in roles:
            raise ForbiddenError("insufficient role", detail={"required": list(roles)})

    # ------------------------------------------------------------------
    # account
    # ------------------------------------------------------------------

    async def change_password(self, ctx: AuthContext, current_password: str, new_password: str) -> int:
        record = self.store.get_password_record(ctx.user_id)
        if record is None or not await self.hashing.verify_password_async(
            record[0], record[1], current_password or ""
        ):
            raise InvalidCredentialsError("invalid credentials")
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current one",
                detail={"field": "newPassword"},
            )
        problems = check_password_policy(new_password)
        if problems:
            raise ValidationError(
                "password does not meet policy", detail={"field": "newPassword", "errors": problems}
            )
        password_hash, algo = await self.hashing.hash_password_async(new_password)
        self.store.save_password(ctx.user_id, password_hash, algo, changed_at=self._now())
        self.logger.info("password_changed", user_id=ctx.user_id)
        return await self.revoke_all_user_sessions(ctx.user_id, reason="password_changed")

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def list_sessions(self, ctx: AuthContext) -> List[Session]:
        return await self.sessions.list_by_user(ctx.user_id)
