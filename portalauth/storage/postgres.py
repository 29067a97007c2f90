from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from portalauth.logging import get_logger
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.memory import (
    DEFAULT_ORGANIZATIONAL_UNITS,
    DEFAULT_SECURITY_QUESTIONS,
    RESET_HISTORY_LIMIT,
)
from portalauth.storage.models import (
    DEFAULT_ROLE,
    MAX_SECURITY_QUESTION_ATTEMPTS,
    MAX_SECURITY_QUESTIONS_PER_USER,
    OrganizationalUnit,
    PasswordResetToken,
    SecurityAnswer,
    SecurityQuestion,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS organizational_unit (
        id SERIAL PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'output',
        organizational_unit_id INTEGER REFERENCES organizational_unit(id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        password_changed_at TIMESTAMPTZ,
        last_login TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_question (
        id SERIAL PRIMARY KEY,
        question_text TEXT NOT NULL UNIQUE,
        category TEXT NOT NULL DEFAULT 'general',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        sort_order INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_security_answer (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        question_id INTEGER NOT NULL REFERENCES security_question(id),
        answer_hash TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        PRIMARY KEY (user_id, question_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token_value CHAR(64) PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        request_ip TEXT,
        user_agent TEXT,
        used_at TIMESTAMPTZ,
        email_sent_at TIMESTAMPTZ,
        invalidated_at TIMESTAMPTZ,
        requires_security_question BOOLEAN NOT NULL DEFAULT FALSE,
        security_question_id INTEGER,
        security_question_verified_at TIMESTAMPTZ,
        attempts_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_reset_token_user_idx ON password_reset_token (user_id, created_at DESC)",
)


class PostgresStore:
    """Postgres-backed credential store.

    Conditional ``UPDATE ... WHERE`` statements carry the atomicity the
    recovery flow needs, so concurrent attempts against one reset token are
    serialised by the database rather than by this process.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
            for code, name in DEFAULT_ORGANIZATIONAL_UNITS:
                conn.execute(
                    "INSERT INTO organizational_unit (code, name) VALUES (%s, %s) ON CONFLICT (code) DO NOTHING",
                    (code, name),
                )
            for order, (text, category) in enumerate(DEFAULT_SECURITY_QUESTIONS, start=1):
                conn.execute(
                    """
                    INSERT INTO security_question (question_text, category, sort_order)
                    VALUES (%s, %s, %s) ON CONFLICT (question_text) DO NOTHING
                    """,
                    (text, category, order),
                )

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=row.get("role") or DEFAULT_ROLE,
            organizational_unit_id=row.get("organizational_unit_id"),
            is_active=bool(row.get("is_active", True)),
            created_at=row.get("created_at") or utcnow(),
            password_changed_at=row.get("password_changed_at"),
            last_login=row.get("last_login"),
        )

    @staticmethod
    def _reset_from_row(row: Dict[str, Any]) -> PasswordResetToken:
        return PasswordResetToken(
            token_value=row["token_value"].strip(),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            request_ip=row.get("request_ip"),
            user_agent=row.get("user_agent"),
            used_at=row.get("used_at"),
            email_sent_at=row.get("email_sent_at"),
            invalidated_at=row.get("invalidated_at"),
            requires_security_question=bool(row.get("requires_security_question")),
            security_question_id=row.get("security_question_id"),
            security_question_verified_at=row.get("security_question_verified_at"),
            attempts_count=int(row.get("attempts_count") or 0),
        )

    # organizational units
    def get_organizational_unit(self, unit_id: int) -> Optional[OrganizationalUnit]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organizational_unit WHERE id = %s", (unit_id,)
            ).fetchone()
        if not row:
            return None
        return OrganizationalUnit(
            id=row["id"], code=row["code"], name=row["name"], is_active=bool(row["is_active"])
        )

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
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            username=username,
            first_name=first_name,
            last_name=last_name,
            role=role,
            organizational_unit_id=organizational_unit_id,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, first_name, last_name, role,
                                          organizational_unit_id, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.username,
                        user.first_name,
                        user.last_name,
                        user.role,
                        user.organizational_unit_id,
                        user.is_active,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "organizational unit does not exist", {"field": "organizational_unit_id"}
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", ((email or "").strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return row is not None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s",
                (when or utcnow(), user_id),
            )

    # credentials
    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        now = changed_at or utcnow()
        try:
            with self._connect() as conn:
                self._save_password(conn, user_id, password_hash, password_algo, now)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    @staticmethod
    def _save_password(conn, user_id: str, password_hash: str, password_algo: str, now: datetime) -> None:
        conn.execute(
            """
            INSERT INTO user_credential (user_id, password_hash, password_algo, created_at, last_updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE
            SET password_hash = EXCLUDED.password_hash,
                password_algo = EXCLUDED.password_algo,
                last_updated_at = EXCLUDED.last_updated_at
            """,
            (user_id, password_hash, password_algo, now, now),
        )
        conn.execute(
            "UPDATE app_user SET password_changed_at = %s WHERE id = %s",
            (now, user_id),
        )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # security questions
    def list_security_questions(self, *, active_only: bool = True) -> List[SecurityQuestion]:
        query = "SELECT * FROM security_question"
        if active_only:
            query += " WHERE is_active"
        query += " ORDER BY sort_order, id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            SecurityQuestion(
                id=row["id"],
                question_text=row["question_text"],
                category=row["category"],
                is_active=bool(row["is_active"]),
                sort_order=row["sort_order"],
            )
            for row in rows
        ]

    def get_security_question(self, question_id: int) -> Optional[SecurityQuestion]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM security_question WHERE id = %s", (question_id,)
            ).fetchone()
        if not row:
            return None
        return SecurityQuestion(
            id=row["id"],
            question_text=row["question_text"],
            category=row["category"],
            is_active=bool(row["is_active"]),
            sort_order=row["sort_order"],
        )

    def list_user_security_answers(self, user_id: str) -> List[SecurityAnswer]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_security_answer
                WHERE user_id = %s AND is_active ORDER BY question_id
                """,
                (user_id,),
            ).fetchall()
        return [
            SecurityAnswer(
                user_id=str(row["user_id"]),
                question_id=row["question_id"],
                answer_hash=row["answer_hash"],
                is_active=bool(row["is_active"]),
                created_at=row["created_at"],
                updated_at=row.get("updated_at"),
            )
            for row in rows
        ]

    def add_security_answers(
        self, user_id: str, answers: Sequence[Tuple[int, str]]
    ) -> List[SecurityAnswer]:
        question_ids = [qid for qid, _ in answers]
        if len(set(question_ids)) != len(question_ids):
            raise ConstraintViolation(
                "security question already configured", {"field": "question_id"}
            )
        now = utcnow()
        try:
            with self._connect() as conn:
                # Lock the user's rows so concurrent setups cannot exceed the cap
                conn.execute("SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,))
                active = conn.execute(
                    "SELECT question_id FROM user_security_answer WHERE user_id = %s AND is_active",
                    (user_id,),
                ).fetchall()
                active_ids = {row["question_id"] for row in active}
                if active_ids.intersection(question_ids):
                    raise ConstraintViolation(
                        "security question already configured", {"field": "question_id"}
                    )
                if len(active_ids) + len(question_ids) > MAX_SECURITY_QUESTIONS_PER_USER:
                    raise ConstraintViolation(
                        "too many security questions", {"max": MAX_SECURITY_QUESTIONS_PER_USER}
                    )
                for qid, answer_hash in answers:
                    valid = conn.execute(
                        "SELECT 1 FROM security_question WHERE id = %s AND is_active", (qid,)
                    ).fetchone()
                    if not valid:
                        raise ConstraintViolation(
                            "security question does not exist", {"question_id": qid}
                        )
                    conn.execute(
                        """
                        INSERT INTO user_security_answer (user_id, question_id, answer_hash, is_active, created_at)
                        VALUES (%s, %s, %s, TRUE, %s)
                        ON CONFLICT (user_id, question_id) DO UPDATE
                        SET answer_hash = EXCLUDED.answer_hash, is_active = TRUE,
                            created_at = EXCLUDED.created_at, updated_at = NULL
                        """,
                        (user_id, qid, answer_hash, now),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return [
            SecurityAnswer(user_id=user_id, question_id=qid, answer_hash=answer_hash, created_at=now)
            for qid, answer_hash in answers
        ]

    def update_security_answer(self, user_id: str, question_id: int, answer_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_security_answer SET answer_hash = %s, updated_at = now()
                WHERE user_id = %s AND question_id = %s AND is_active
                """,
                (answer_hash, user_id, question_id),
            )
            return cur.rowcount > 0

    def deactivate_security_answer(self, user_id: str, question_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_security_answer SET is_active = FALSE, updated_at = now()
                WHERE user_id = %s AND question_id = %s AND is_active
                """,
                (user_id, question_id),
            )
            return cur.rowcount > 0

    # password reset tokens
    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (
                        token_value, user_id, created_at, expires_at, request_ip, user_agent,
                        requires_security_question, security_question_id, attempts_count
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token_value,
                        token.user_id,
                        token.created_at,
                        token.expires_at,
                        token.request_ip,
                        token.user_agent,
                        token.requires_security_question,
                        token.security_question_id,
                        token.attempts_count,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token collision", {"field": "token"})
        return token

    def get_reset_token(self, token_value: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_value = %s", (token_value,)
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def latest_reset_token(self, user_id: str) -> Optional[PasswordResetToken]:
        history = self.list_reset_tokens(user_id, limit=1)
        return history[0] if history else None

    def list_reset_tokens(self, user_id: str, limit: int = RESET_HISTORY_LIMIT) -> List[PasswordResetToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM password_reset_token WHERE user_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._reset_from_row(row) for row in rows]

    def mark_reset_email_sent(self, token_value: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE password_reset_token SET email_sent_at = %s
                WHERE token_value = %s AND email_sent_at IS NULL
                """,
                (when, token_value),
            )

    def invalidate_user_reset_tokens(self, user_id: str, when: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE password_reset_token SET invalidated_at = %s
                WHERE user_id = %s AND used_at IS NULL AND invalidated_at IS NULL
                """,
                (when, user_id),
            )
            return cur.rowcount

    def invalidate_reset_token(self, token_value: str, when: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE password_reset_token SET invalidated_at = %s
                WHERE token_value = %s AND used_at IS NULL AND invalidated_at IS NULL
                """,
                (when, token_value),
            )
            return cur.rowcount > 0

    def record_reset_attempt(
        self,
        token_value: str,
        *,
        verified: bool,
        when: datetime,
        max_attempts: int = MAX_SECURITY_QUESTION_ATTEMPTS,
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token
                SET attempts_count = attempts_count + 1,
                    security_question_verified_at = CASE
                        WHEN security_question_verified_at IS NOT NULL THEN security_question_verified_at
                        WHEN %(verified)s THEN %(when)s
                        ELSE NULL
                    END,
                    invalidated_at = CASE
                        WHEN security_question_verified_at IS NULL
                             AND NOT %(verified)s
                             AND attempts_count + 1 >= %(max)s THEN %(when)s
                        ELSE invalidated_at
                    END
                WHERE token_value = %(token)s
                  AND used_at IS NULL
                  AND invalidated_at IS NULL
                  AND expires_at > %(when)s
                  AND (security_question_verified_at IS NOT NULL OR attempts_count < %(max)s)
                RETURNING *
                """,
                {"verified": verified, "when": when, "max": max_attempts, "token": token_value},
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def complete_password_reset(
        self,
        token_value: str,
        password_hash: str,
        password_algo: str,
        when: datetime,
    ) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used_at = %(when)s
                WHERE token_value = %(token)s
                  AND used_at IS NULL
                  AND invalidated_at IS NULL
                  AND expires_at > %(when)s
                  AND (NOT requires_security_question OR security_question_verified_at IS NOT NULL)
                RETURNING user_id
                """,
                {"when": when, "token": token_value},
            ).fetchone()
            if not row:
                return None
            user_id = str(row["user_id"])
            # Same transaction: the token is consumed only if the password lands
            self._save_password(conn, user_id, password_hash, password_algo, when)
        return user_id

    def cleanup_reset_tokens(self, when: datetime, retention: timedelta = timedelta(days=1)) -> int:
        cutoff = when - retention
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM password_reset_token
                WHERE expires_at <= %(cutoff)s
                   OR COALESCE(used_at, invalidated_at) <= %(cutoff)s
                """,
                {"cutoff": cutoff},
            )
            return cur.rowcount
