from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, rows=None, error=None):
        self.rows = list(rows or [])
        self.error = error
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        row = self.rows.pop(0) if self.rows else None
        return FakeCursor(row, rowcount=1 if row else 0)


class DummyPool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool(conn)
    return store


def _reset_row(**overrides):
    row = {
        "token_value": "a" * 64,
        "user_id": "7f0c1d9e-0000-0000-0000-000000000001",
        "created_at": NOW,
        "expires_at": NOW + timedelta(minutes=30),
        "request_ip": "10.0.0.1",
        "user_agent": None,
        "used_at": None,
        "email_sent_at": NOW,
        "invalidated_at": None,
        "requires_security_question": True,
        "security_question_id": 2,
        "security_question_verified_at": None,
        "attempts_count": 1,
    }
    row.update(overrides)
    return row


class TestRowMapping:
    def test_user_row(self):
        user = PostgresStore._user_from_row(
            {
                "id": "7f0c1d9e-0000-0000-0000-000000000001",
                "email": "user@inst.example",
                "username": "ana",
                "first_name": "Ana",
                "last_name": "Silva",
                "role": None,
                "organizational_unit_id": 3,
                "is_active": True,
                "created_at": NOW,
                "password_changed_at": NOW,
            }
        )
        assert user.role == "output"
        assert user.full_name == "Ana Silva"
        assert user.last_login is None

    def test_reset_row_strips_padded_token(self):
        token = PostgresStore._reset_from_row(_reset_row(token_value="a" * 64 + "  "))
        assert token.token_value == "a" * 64
        assert token.attempts_remaining == 2
        assert token.requires_security_question


class TestStatements:
    def test_duplicate_username_maps_to_constraint(self):
        conn = FakeConnection(
            error=errors.UniqueViolation('duplicate key value violates "app_user_username_key"')
        )
        with pytest.raises(ConstraintViolation) as excinfo:
            _store(conn).create_user("user@inst.example", "ana", "Ana", "Silva")
        assert excinfo.value.field == "username"

    def test_missing_unit_maps_to_constraint(self):
        conn = FakeConnection(error=errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation) as excinfo:
            _store(conn).create_user("user@inst.example", "ana", "Ana", "Silva", organizational_unit_id=99)
        assert excinfo.value.field == "organizational_unit_id"

    def test_attempt_on_unusable_token_returns_none(self):
        conn = FakeConnection(rows=[None])
        assert _store(conn).record_reset_attempt("a" * 64, verified=False, when=NOW) is None
        sql, params = conn.statements[0]
        assert "attempts_count < %(max)s" in sql
        assert params["max"] == 3

    def test_attempt_returns_updated_token(self):
        conn = FakeConnection(rows=[_reset_row(attempts_count=3, invalidated_at=NOW)])
        updated = _store(conn).record_reset_attempt("a" * 64, verified=False, when=NOW)
        assert updated.attempts_count == 3
        assert updated.invalidated_at == NOW

    def test_complete_reset_writes_password_in_same_connection(self):
        conn = FakeConnection(rows=[{"user_id": "u-1"}])
        assert _store(conn).complete_password_reset("a" * 64, "hash", "argon2id", NOW) == "u-1"
        assert len(conn.statements) > 1
        assert any("user_credential" in sql for sql, _ in conn.statements[1:])

    def test_complete_reset_on_used_token(self):
        conn = FakeConnection(rows=[None])
        assert _store(conn).complete_password_reset("a" * 64, "hash", "argon2id", NOW) is None
        assert len(conn.statements) == 1
