from datetime import timedelta

import pytest

from portalauth.service.errors import ConflictError, NotFoundError, ValidationError
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.memory import MemoryStore
from portalauth.storage.models import PasswordResetToken, ResetState, utcnow


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("User@Inst.Example", "ana", "Ana", "Silva", organizational_unit_id=1)


def _reset_token(user_id, *, value="a" * 64, requires_question=True, minutes=30):
    now = utcnow()
    return PasswordResetToken(
        token_value=value,
        user_id=user_id,
        created_at=now,
        expires_at=now + timedelta(minutes=minutes),
        requires_security_question=requires_question,
        security_question_id=1 if requires_question else None,
    )


class TestUsers:
    def test_seeded_catalogs(self, store):
        assert store.get_organizational_unit(1).code == "PUBLIC_WORKS"
        assert len(store.list_security_questions()) == 8

    def test_email_is_normalized(self, store, user):
        assert user.email == "user@inst.example"
        assert store.get_user_by_email(" USER@inst.example ").id == user.id

    def test_unique_email_and_username(self, store, user):
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("user@inst.example", "other", "A", "B")
        assert excinfo.value.field == "email"
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("new@inst.example", "ana", "A", "B")
        assert excinfo.value.field == "username"

    def test_unknown_unit(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_user("new@inst.example", "new", "A", "B", organizational_unit_id=42)

    def test_returned_users_are_copies(self, store, user):
        user.first_name = "Changed"
        assert store.get_user(user.id).first_name == "Ana"

    def test_save_password_stamps_change_time(self, store, user):
        store.save_password(user.id, "hash", "argon2id")
        assert store.get_password_record(user.id) == ("hash", "argon2id")
        assert store.get_user(user.id).password_changed_at is not None

    def test_save_password_for_missing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")


class TestSecurityAnswers:
    def test_at_most_three(self, store, user):
        store.add_security_answers(user.id, [(1, "h1"), (2, "h2"), (3, "h3")])
        with pytest.raises(ConstraintViolation):
            store.add_security_answers(user.id, [(4, "h4")])

    def test_no_duplicates(self, store, user):
        store.add_security_answers(user.id, [(1, "h1")])
        with pytest.raises(ConstraintViolation):
            store.add_security_answers(user.id, [(1, "again")])
        with pytest.raises(ConstraintViolation):
            store.add_security_answers(user.id, [(2, "x"), (2, "y")])

    def test_deactivated_answer_frees_a_slot(self, store, user):
        store.add_security_answers(user.id, [(1, "h1"), (2, "h2"), (3, "h3")])
        assert store.deactivate_security_answer(user.id, 2)
        store.add_security_answers(user.id, [(2, "new")])
        answers = store.list_user_security_answers(user.id)
        assert [(a.question_id, a.answer_hash) for a in answers] == [(1, "h1"), (2, "new"), (3, "h3")]

    def test_update_requires_active_answer(self, store, user):
        assert not store.update_security_answer(user.id, 1, "h")
        store.add_security_answers(user.id, [(1, "h1")])
        assert store.update_security_answer(user.id, 1, "h2")
        assert store.list_user_security_answers(user.id)[0].answer_hash == "h2"


class TestResetTokens:
    def test_attempts_lock_token(self, store, user):
        store.create_reset_token(_reset_token(user.id))
        now = utcnow()
        for expected in (1, 2):
            updated = store.record_reset_attempt("a" * 64, verified=False, when=now)
            assert updated.attempts_count == expected
            assert updated.invalidated_at is None
        locked = store.record_reset_attempt("a" * 64, verified=False, when=now)
        assert locked.invalidated_at is not None
        assert store.record_reset_attempt("a" * 64, verified=True, when=now) is None
        assert store.get_reset_token("a" * 64).state(now) == ResetState.FAILED

    def test_attempts_on_verified_token_are_counted(self, store, user):
        store.create_reset_token(_reset_token(user.id))
        now = utcnow()
        assert store.record_reset_attempt("a" * 64, verified=True, when=now).attempts_count == 1
        for expected in (2, 3, 4):
            updated = store.record_reset_attempt("a" * 64, verified=False, when=now)
            assert updated.attempts_count == expected
            assert updated.security_question_verified_at == now
            assert updated.invalidated_at is None
        assert store.get_reset_token("a" * 64).state(now) == ResetState.VERIFIED

    def test_complete_reset_once(self, store, user):
        store.create_reset_token(_reset_token(user.id, requires_question=False))
        now = utcnow()
        assert store.complete_password_reset("a" * 64, "hash", "argon2id", now) == user.id
        assert store.complete_password_reset("a" * 64, "hash2", "argon2id", now) is None
        assert store.get_password_record(user.id) == ("hash", "argon2id")

    def test_complete_requires_verification(self, store, user):
        store.create_reset_token(_reset_token(user.id))
        now = utcnow()
        assert store.complete_password_reset("a" * 64, "hash", "argon2id", now) is None
        store.record_reset_attempt("a" * 64, verified=True, when=now)
        assert store.complete_password_reset("a" * 64, "hash", "argon2id", now) == user.id

    def test_expired_token_cannot_complete(self, store, user):
        store.create_reset_token(_reset_token(user.id, requires_question=False, minutes=-1))
        assert store.complete_password_reset("a" * 64, "hash", "argon2id", utcnow()) is None

    def test_invalidate_user_tokens(self, store, user):
        store.create_reset_token(_reset_token(user.id, value="a" * 64))
        store.create_reset_token(_reset_token(user.id, value="b" * 64))
        assert store.invalidate_user_reset_tokens(user.id, utcnow()) == 2
        assert store.invalidate_user_reset_tokens(user.id, utcnow()) == 0

    def test_token_collision(self, store, user):
        store.create_reset_token(_reset_token(user.id))
        with pytest.raises(ConstraintViolation):
            store.create_reset_token(_reset_token(user.id))


class TestSecurityQuestionService:
    @pytest.mark.asyncio
    async def test_setup_update_remove(self, components):
        user = components.store.create_user("q@inst.example", "q", "Q", "R", organizational_unit_id=1)
        status = await components.questions.setup(user.id, [(2, "Lisbon")])
        assert status.configured_count == 1
        assert status.has_questions
        assert 2 not in {q.id for q in status.available}

        await components.questions.update_answer(user.id, 2, "Porto")
        stored = components.questions.stored_answer_hash(user.id, 2)
        assert components.hashing.verify_answer(stored, "porto")

        components.questions.remove(user.id, 2)
        assert not components.questions.status(user.id).has_questions
        with pytest.raises(NotFoundError):
            components.questions.remove(user.id, 2)

    @pytest.mark.asyncio
    async def test_setup_over_limit_conflicts(self, components):
        user = components.store.create_user("q@inst.example", "q", "Q", "R", organizational_unit_id=1)
        await components.questions.setup(user.id, [(1, "Rex"), (2, "Lisbon")])
        with pytest.raises(ConflictError):
            await components.questions.setup(user.id, [(3, "Smith"), (4, "Central")])

    def test_validate_batch_size(self, components):
        with pytest.raises(ValidationError):
            components.questions.validate([])
        with pytest.raises(ValidationError):
            components.questions.validate([(1, "aa"), (2, "bb"), (3, "cc"), (4, "dd")])
