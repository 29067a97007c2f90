from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from portalauth.logging import get_logger
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import (
    DEFAULT_ROLE,
    MAX_SECURITY_QUESTION_ATTEMPTS,
    MAX_SECURITY_QUESTIONS_PER_USER,
    OrganizationalUnit,
    PasswordResetToken,
    SecurityAnswer,
    SecurityQuestion,
    User,
    UserCredential,
    utcnow,
)

DEFAULT_ORGANIZATIONAL_UNITS: Tuple[Tuple[str, str], ...] = (
    ("PUBLIC_WORKS", "Public Works"),
    ("MONITORING", "Monitoring"),
    ("URBAN_MOBILITY", "Urban Mobility"),
    ("E_GOVERNMENT", "E-Government"),
    ("PRESS", "Press and Communications"),
    ("TECHNOLOGY", "Technology"),
    ("ADMINISTRATION", "Administration"),
)

DEFAULT_SECURITY_QUESTIONS: Tuple[Tuple[str, str], ...] = (
    ("What was the name of your first pet?", "personal"),
    ("In which city were you born?", "personal"),
    ("What is your mother's maiden name?", "family"),
    ("What was the name of your primary school?", "education"),
    ("What was the make of your first car?", "personal"),
    ("What is the name of the street you grew up on?", "places"),
    ("What was your childhood nickname?", "personal"),
    ("What is the first name of your oldest cousin?", "family"),
)

RESET_HISTORY_LIMIT = 5


class MemoryStore:
    """In-memory credential store for tests and single-process development.

    Mirrors :class:`PostgresStore`; every mutation happens under one lock so
    the conditional updates used by the recovery flow are atomic.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data_lock = threading.RLock()
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.org_units: Dict[int, OrganizationalUnit] = {}
        self.questions: Dict[int, SecurityQuestion] = {}
        self.answers: Dict[str, List[SecurityAnswer]] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self._seed_defaults()

    def _seed_defaults(self) -> None:
        for idx, (code, name) in enumerate(DEFAULT_ORGANIZATIONAL_UNITS, start=1):
            self.org_units[idx] = OrganizationalUnit(id=idx, code=code, name=name)
        for idx, (text, category) in enumerate(DEFAULT_SECURITY_QUESTIONS, start=1):
            self.questions[idx] = SecurityQuestion(
                id=idx, question_text=text, category=category, sort_order=idx
            )

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # organizational units
    def get_organizational_unit(self, unit_id: int) -> Optional[OrganizationalUnit]:
        with self._data_lock:
            return self.org_units.get(unit_id)

    def add_organizational_unit(self, code: str, name: str, *, is_active: bool = True) -> OrganizationalUnit:
        with self._data_lock:
            if any(u.code == code for u in self.org_units.values()):
                raise ConstraintViolation("unit code already exists", {"field": "code"})
            unit_id = max(self.org_units, default=0) + 1
            unit = OrganizationalUnit(id=unit_id, code=code, name=name, is_active=is_active)
            self.org_units[unit_id] = unit
            return unit

    # users
    def create_user(
        self,
        email: str,
        username: str,
        first_name: str,
        last_name: str,
        *,
        role: str = DEFAULT_ROLE,
        organizational_unit_id: Optional[int] = None,
        is_active: bool = True,
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            if any(u.email == normalized_email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(u.username == username for u in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if organizational_unit_id is not None and organizational_unit_id not in self.org_units:
                raise ConstraintViolation(
                    "organizational unit does not exist",
                    {"field": "organizational_unit_id"},
                )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                username=username,
                first_name=first_name,
                last_name=last_name,
                role=role,
                organizational_unit_id=organizational_unit_id,
                is_active=is_active,
            )
            self.users[user.id] = user
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.copy(user) if user else None

    def username_exists(self, username: str) -> bool:
        with self._data_lock:
            return any(u.username == username for u in self.users.values())

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return copy.copy(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return copy.copy(user)

    def record_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login = when or utcnow()

    # credentials
    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            now = changed_at or utcnow()
            existing = self.credentials.get(user_id)
            self.credentials[user_id] = UserCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else now,
                last_updated_at=now,
            )
            user.password_changed_at = now

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            return (cred.password_hash, cred.password_algo) if cred else None

    # security questions
    def list_security_questions(self, *, active_only: bool = True) -> List[SecurityQuestion]:
        with self._data_lock:
            questions = [
                q for q in self.questions.values() if q.is_active or not active_only
            ]
            return sorted(questions, key=lambda q: (q.sort_order, q.id))

    def get_security_question(self, question_id: int) -> Optional[SecurityQuestion]:
        with self._data_lock:
            return self.questions.get(question_id)

    def list_user_security_answers(self, user_id: str) -> List[SecurityAnswer]:
        with self._data_lock:
            return [
                copy.copy(a)
                for a in sorted(self.answers.get(user_id, []), key=lambda a: a.question_id)
                if a.is_active
            ]

    def add_security_answers(
        self, user_id: str, answers: Sequence[Tuple[int, str]]
    ) -> List[SecurityAnswer]:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            existing = self.answers.setdefault(user_id, [])
            active_ids = {a.question_id for a in existing if a.is_active}
            new_ids = [qid for qid, _ in answers]
            if len(set(new_ids)) != len(new_ids) or active_ids.intersection(new_ids):
                raise ConstraintViolation(
                    "security question already configured", {"field": "question_id"}
                )
            if len(active_ids) + len(new_ids) > MAX_SECURITY_QUESTIONS_PER_USER:
                raise ConstraintViolation(
                    "too many security questions",
                    {"max": MAX_SECURITY_QUESTIONS_PER_USER},
                )
            for qid in new_ids:
                question = self.questions.get(qid)
                if question is None or not question.is_active:
                    raise ConstraintViolation(
                        "security question does not exist", {"question_id": qid}
                    )
            created: List[SecurityAnswer] = []
            for qid, answer_hash in answers:
                # Reactivating a previously removed question replaces the old row
                existing[:] = [a for a in existing if a.question_id != qid]
                record = SecurityAnswer(user_id=user_id, question_id=qid, answer_hash=answer_hash)
                existing.append(record)
                created.append(copy.copy(record))
            return created

    def update_security_answer(self, user_id: str, question_id: int, answer_hash: str) -> bool:
        with self._data_lock:
            for answer in self.answers.get(user_id, []):
                if answer.question_id == question_id and answer.is_active:
                    answer.answer_hash = answer_hash
                    answer.updated_at = utcnow()
                    return True
            return False

    def deactivate_security_answer(self, user_id: str, question_id: int) -> bool:
        with self._data_lock:
            for answer in self.answers.get(user_id, []):
                if answer.question_id == question_id and answer.is_active:
                    answer.is_active = False
                    answer.updated_at = utcnow()
                    return True
            return False

    # password reset tokens
    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if token.token_value in self.reset_tokens:
                raise ConstraintViolation("reset token collision", {"field": "token"})
            self.reset_tokens[token.token_value] = copy.copy(token)
            return copy.copy(token)

    def get_reset_token(self, token_value: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = self.reset_tokens.get(token_value)
            return copy.copy(token) if token else None

    def latest_reset_token(self, user_id: str) -> Optional[PasswordResetToken]:
        history = self.list_reset_tokens(user_id, limit=1)
        return history[0] if history else None

    def list_reset_tokens(self, user_id: str, limit: int = RESET_HISTORY_LIMIT) -> List[PasswordResetToken]:
        with self._data_lock:
            tokens = [t for t in self.reset_tokens.values() if t.user_id == user_id]
            tokens.sort(key=lambda t: t.created_at, reverse=True)
            return [copy.copy(t) for t in tokens[:limit]]

    def mark_reset_email_sent(self, token_value: str, when: datetime) -> None:
        with self._data_lock:
            token = self.reset_tokens.get(token_value)
            if token and token.email_sent_at is None:
                token.email_sent_at = when

    def invalidate_user_reset_tokens(self, user_id: str, when: datetime) -> int:
        with self._data_lock:
            count = 0
            for token in self.reset_tokens.values():
                if token.user_id == user_id and token.used_at is None and token.invalidated_at is None:
                    token.invalidated_at = when
                    count += 1
            return count

    def invalidate_reset_token(self, token_value: str, when: datetime) -> bool:
        with self._data_lock:
            token = self.reset_tokens.get(token_value)
            if token is None or token.used_at is not None or token.invalidated_at is not None:
                return False
            token.invalidated_at = when
            return True

    def record_reset_attempt(
        self,
        token_value: str,
        *,
        verified: bool,
        when: datetime,
        max_attempts: int = MAX_SECURITY_QUESTION_ATTEMPTS,
    ) -> Optional[PasswordResetToken]:
        """Count one security-answer attempt against a usable token.

        Returns the updated token, or ``None`` when the token was not usable
        (used, invalidated, expired or out of attempts) at the moment of the
        update. A failed attempt that reaches ``max_attempts`` invalidates the
        token in the same step. Attempts on an already verified token are
        counted but never undo the verification or lock the token.
        """
        with self._data_lock:
            token = self.reset_tokens.get(token_value)
            if (
                token is None
                or token.used_at is not None
                or token.invalidated_at is not None
                or token.expires_at <= when
            ):
                return None
            already_verified = token.security_question_verified_at is not None
            if not already_verified and token.attempts_count >= max_attempts:
                return None
            token.attempts_count += 1
            if already_verified:
                return copy.copy(token)
            if verified:
                token.security_question_verified_at = when
            elif token.attempts_count >= max_attempts:
                token.invalidated_at = when
            return copy.copy(token)

    def complete_password_reset(
        self,
        token_value: str,
        password_hash: str,
        password_algo: str,
        when: datetime,
    ) -> Optional[str]:
        """Consume the token and store the new password in one step.

        Returns the user id on success, ``None`` if the token was not usable.
        """
        with self._data_lock:
            token = self.reset_tokens.get(token_value)
            if (
                token is None
                or token.used_at is not None
                or token.invalidated_at is not None
                or token.expires_at <= when
                or not token.is_verified
            ):
                return None
            token.used_at = when
            self.save_password(token.user_id, password_hash, password_algo, changed_at=when)
            return token.user_id

    def cleanup_reset_tokens(self, when: datetime, retention: timedelta = timedelta(days=1)) -> int:
        """Delete reset tokens that finished or expired more than ``retention`` ago."""
        cutoff = when - retention
        with self._data_lock:
            stale = [
                value
                for value, token in self.reset_tokens.items()
                if _finished_before(token, cutoff)
            ]
            for value in stale:
                del self.reset_tokens[value]
            return len(stale)


def _finished_before(token: PasswordResetToken, cutoff: datetime) -> bool:
    if token.expires_at <= cutoff:
        return True
    finished = token.used_at or token.invalidated_at
    return finished is not None and finished <= cutoff
