from __future__ import annotations

import asyncio
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from portalauth.config import Settings
from portalauth.logging import get_logger, log_security_event
from portalauth.service.email import EmailService
from portalauth.service.errors import (
    InvalidSecurityAnswerError,
    InvalidTokenError,
    ResetTokenExhaustedError,
    ResetTokenExpiredError,
    ResetTokenInvalidError,
    TokenExpiredError,
    ValidationError,
)
from portalauth.service.passwords import PasswordHashing, check_password_policy
from portalauth.service.rate_limit import SlidingWindowRateLimiter
from portalauth.service.security_questions import SecurityQuestionService
from portalauth.service.tokens import PASSWORD_RESET, TokenService
from portalauth.storage.models import (
    MAX_SECURITY_QUESTION_ATTEMPTS,
    PasswordResetToken,
    ResetState,
    from_timestamp,
)

logger = get_logger(__name__)

GENERIC_REQUEST_MESSAGE = (
    "If an account exists for that email, password reset instructions have been sent."
)
_TOKEN_VALUE = re.compile(r"^[0-9a-f]{64}$")


@dataclass
class VerificationResult:
    verified: bool
    attempts_remaining: int


@dataclass
class ResetStatus:
    state: ResetState
    requires_security_question: bool
    question_id: Optional[int]
    question_text: Optional[str]
    attempts: int
    max_attempts: int
    attempts_remaining: int
    expires_at: datetime


class PasswordRecoveryService:
    """Password reset gated by a security question.

    States run ``requested -> email_sent -> awaiting_security_answer ->
    verified -> confirmed``, ending early in ``expired`` or ``failed``.
    Every answer attempt counts against the token; a failed attempt that
    reaches the cap invalidates it. A successful confirm signs the user
    out everywhere.
    """

    def __init__(
        self,
        store,
        tokens: TokenService,
        questions: SecurityQuestionService,
        hashing: PasswordHashing,
        email: EmailService,
        settings: Settings,
        *,
        request_limiter: SlidingWindowRateLimiter,
        answer_limiter: SlidingWindowRateLimiter,
        revoke_all_sessions: Callable[..., Awaitable[int]],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.questions = questions
        self.hashing = hashing
        self.email = email
        self.settings = settings
        self.request_limiter = request_limiter
        self.answer_limiter = answer_limiter
        self._revoke_all_sessions = revoke_all_sessions
        self._clock = clock

    def _now(self) -> datetime:
        return from_timestamp(self._clock())

    async def request(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Start a reset for ``email``.

        The same message is returned whether or not the account exists; only
        the rate limit (per email) can make this fail.
        """
        normalized = (email or "").strip().lower()
        await self.request_limiter.enforce(normalized)

        domain = normalized.rsplit("@", 1)[-1] if "@" in normalized else ""
        allowed = self.settings.allowed_domains
        if allowed and domain not in allowed:
            logger.info("password_reset_domain_rejected", domain=domain)
            return GENERIC_REQUEST_MESSAGE

        user = self.store.get_user_by_email(normalized)
        if user is None or not user.is_active:
            logger.info("password_reset_unknown_account")
            return GENERIC_REQUEST_MESSAGE

        now = self._now()
        superseded = self.store.invalidate_user_reset_tokens(user.id, now)
        question_id = self.questions.first_question_id(user.id)
        record = PasswordResetToken(
            token_value=secrets.token_hex(32),
            user_id=user.id,
            created_at=now,
            expires_at=now + timedelta(seconds=self.tokens.ttl_seconds(PASSWORD_RESET)),
            request_ip=ip_address,
            user_agent=(user_agent or "")[:512] or None,
            requires_security_question=question_id is not None,
            security_question_id=question_id,
        )
        self.store.create_reset_token(record)
        issued = self.tokens.issue_password_reset_token(
            user.id, user.email, token_value=record.token_value
        )
        logger.info(
            "password_reset_requested",
            user_id=user.id,
            superseded=superseded,
            requires_security_question=record.requires_security_question,
        )

        sent = await asyncio.to_thread(
            self.email.send_password_reset,
            user.email,
            issued.token,
            requires_security_question=record.requires_security_question,
        )
        if sent:
            self.store.mark_reset_email_sent(record.token_value, self._now())
        else:
            logger.warning("password_reset_email_failed", user_id=user.id)
        return GENERIC_REQUEST_MESSAGE

    def _resolve(self, token: str) -> PasswordResetToken:
        """Map a presented reset token to its stored record.

        Accepts the signed reset token that was mailed out, or the bare
        64-hex token value it carries as ``jti``.
        """
        token = (token or "").strip()
        if _TOKEN_VALUE.match(token):
            value = token
        else:
            try:
                value = str(self.tokens.verify_password_reset(token)["jti"])
            except TokenExpiredError as exc:
                raise ResetTokenExpiredError("reset token has expired") from exc
            except InvalidTokenError as exc:
                raise ResetTokenInvalidError("reset token is invalid") from exc
        record = self.store.get_reset_token(value)
        if record is None:
            raise ResetTokenInvalidError("reset token is invalid")
        return record

    @staticmethod
    def _is_exhausted(record: PasswordResetToken) -> bool:
        return (
            record.requires_security_question
            and record.security_question_verified_at is None
            and record.attempts_count >= MAX_SECURITY_QUESTION_ATTEMPTS
        )

    def _ensure_usable(self, record: PasswordResetToken, now: datetime) -> None:
        if record.is_used:
            raise ResetTokenInvalidError("reset token has already been used")
        if self._is_exhausted(record):
            if record.invalidated_at is None:
                self.store.invalidate_reset_token(record.token_value, now)
            raise ResetTokenExhaustedError(
                "too many incorrect answers; request a new reset link",
                detail={"attempts_remaining": 0},
            )
        if record.invalidated_at is not None:
            raise ResetTokenInvalidError("reset token is no longer valid")
        if record.is_expired(now):
            raise ResetTokenExpiredError("reset token has expired")

    async def verify_security_question(
        self, token: str, question_id: int, answer: str
    ) -> VerificationResult:
        record = self._resolve(token)
        now = self._now()
        self._ensure_usable(record, now)
        if not record.requires_security_question:
            raise ValidationError("no security question is required for this reset")
        if record.security_question_verified_at is not None:
            # Counted like any other attempt; the token stays verified
            updated = self.store.record_reset_attempt(
                record.token_value, verified=True, when=now
            )
            if updated is None:
                current = self.store.get_reset_token(record.token_value) or record
                self._ensure_usable(current, self._now())
                raise ResetTokenInvalidError("reset token is no longer valid")
            return VerificationResult(verified=True, attempts_remaining=updated.attempts_remaining)

        await self.answer_limiter.enforce(record.token_value)

        stored_hash = self.questions.stored_answer_hash(
            record.user_id, record.security_question_id
        )
        correct = False
        if stored_hash is not None:
            matches = await self.hashing.verify_answer_async(stored_hash, answer or "")
            correct = matches and question_id == record.security_question_id

        updated = self.store.record_reset_attempt(
            record.token_value, verified=correct, when=self._now()
        )
        if updated is None:
            # Consumed, invalidated or exhausted by a concurrent request
            current = self.store.get_reset_token(record.token_value) or record
            self._ensure_usable(current, self._now())
            raise ResetTokenInvalidError("reset token is no longer valid")

        if correct:
            logger.info(
                "security_question_verified",
                user_id=record.user_id,
                attempts=updated.attempts_count,
            )
            return VerificationResult(verified=True, attempts_remaining=updated.attempts_remaining)

        if updated.invalidated_at is not None:
            log_security_event(
                "reset_token_locked",
                user_id=record.user_id,
                attempts=updated.attempts_count,
            )
            raise ResetTokenExhaustedError(
                "too many incorrect answers; request a new reset link",
                detail={"attempts_remaining": 0},
            )
        logger.info(
            "security_question_failed",
            user_id=record.user_id,
            attempts_remaining=updated.attempts_remaining,
        )
        raise InvalidSecurityAnswerError(
            "invalid answer",
            detail={"attempts_remaining": updated.attempts_remaining},
        )

    async def confirm(self, token: str, new_password: str) -> str:
        """Set the new password and revoke every session of the user.

        Returns the user id. The token is consumed in the same store step
        that writes the password, so it succeeds at most once.
        """
        record = self._resolve(token)
        self._ensure_usable(record, self._now())
        if not record.is_verified:
            raise ValidationError(
                "security question must be answered first",
                detail={"requires_security_question": True},
            )
        problems = check_password_policy(new_password)
        if problems:
            raise ValidationError("password does not meet policy", detail={"errors": problems})

        password_hash, algo = await self.hashing.hash_password_async(new_password)
        user_id = self.store.complete_password_reset(
            record.token_value, password_hash, algo, self._now()
        )
        if user_id is None:
            raise ResetTokenInvalidError("reset token is no longer valid")

        revoked = await self._revoke_all_sessions(user_id, reason="password_reset")
        logger.info("password_reset_completed", user_id=user_id, sessions_revoked=revoked)

        user = self.store.get_user(user_id)
        if user is not None:
            await asyncio.to_thread(self.email.send_password_changed, user.email)
        return user_id

    def status(self, token: str) -> ResetStatus:
        record = self._resolve(token)
        question = None
        if record.security_question_id is not None:
            question = self.store.get_security_question(record.security_question_id)
        return ResetStatus(
            state=record.state(self._now()),
            requires_security_question=record.requires_security_question,
            question_id=record.security_question_id,
            question_text=question.question_text if question else None,
            attempts=record.attempts_count,
            max_attempts=MAX_SECURITY_QUESTION_ATTEMPTS,
            attempts_remaining=record.attempts_remaining,
            expires_at=record.expires_at,
        )

    def cleanup_expired(self) -> int:
        removed = self.store.cleanup_reset_tokens(self._now())
        if removed:
            logger.info("password_reset_cleanup", removed=removed)
        return removed
