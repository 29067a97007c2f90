from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

ROLES = ("admin", "input", "output")
DEFAULT_ROLE = "output"

MAX_SECURITY_QUESTIONS_PER_USER = 3
MAX_SECURITY_QUESTION_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class OrganizationalUnit:
    id: int
    code: str
    name: str
    is_active: bool = True


@dataclass
class User:
    id: str
    email: str
    username: str
    first_name: str
    last_name: str
    role: str = DEFAULT_ROLE
    organizational_unit_id: Optional[int] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    password_changed_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class Session:
    """Server-side session record kept in the Sessions partition."""

    session_id: str
    user_id: str
    email: str
    role: str
    organizational_unit_id: Optional[int]
    created_at: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["last_activity"] = self.last_activity.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            email=data["email"],
            role=data.get("role", DEFAULT_ROLE),
            organizational_unit_id=data.get("organizational_unit_id"),
            created_at=_parse_dt(data["created_at"]),
            last_activity=_parse_dt(data.get("last_activity") or data["created_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )


@dataclass
class SecurityQuestion:
    id: int
    question_text: str
    category: str = "general"
    is_active: bool = True
    sort_order: int = 0


@dataclass
class SecurityAnswer:
    user_id: str
    question_id: int
    answer_hash: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class ResetState(str, Enum):
    REQUESTED = "requested"
    EMAIL_SENT = "email_sent"
    AWAITING_SECURITY_ANSWER = "awaiting_security_answer"
    VERIFIED = "verified"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_RESET_STATES = frozenset(
    {ResetState.CONFIRMED, ResetState.EXPIRED, ResetState.FAILED}
)


@dataclass
class PasswordResetToken:
    token_value: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    request_ip: Optional[str] = None
    user_agent: Optional[str] = None
    used_at: Optional[datetime] = None
    email_sent_at: Optional[datetime] = None
    invalidated_at: Optional[datetime] = None
    requires_security_question: bool = False
    security_question_id: Optional[int] = None
    security_question_verified_at: Optional[datetime] = None
    attempts_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    @property
    def is_verified(self) -> bool:
        return (
            not self.requires_security_question
            or self.security_question_verified_at is not None
        )

    @property
    def attempts_remaining(self) -> int:
        return max(0, MAX_SECURITY_QUESTION_ATTEMPTS - self.attempts_count)

    def state(self, now: datetime) -> ResetState:
        if self.used_at is not None:
            return ResetState.CONFIRMED
        if self.invalidated_at is not None:
            return ResetState.FAILED
        if self.is_expired(now):
            return ResetState.EXPIRED
        if self.security_question_verified_at is not None:
            return ResetState.VERIFIED
        if self.requires_security_question and self.attempts_count >= MAX_SECURITY_QUESTION_ATTEMPTS:
            return ResetState.FAILED
        if self.email_sent_at is None:
            return ResetState.REQUESTED
        if self.requires_security_question:
            return ResetState.AWAITING_SECURITY_ANSWER
        return ResetState.EMAIL_SENT
