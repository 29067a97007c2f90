import pytest

from portalauth.service.passwords import (
    PASSWORD_ALGO,
    check_answer,
    check_password_policy,
    normalize_answer,
)


class TestPasswordPolicy:
    def test_accepts_compliant_password(self):
        assert check_password_policy("Abc12345!") == []

    @pytest.mark.parametrize(
        "password, rule",
        [
            ("Ab1!", "at least 8 characters"),
            ("ABC12345!", "lowercase"),
            ("abc12345!", "uppercase"),
            ("Abcdefgh!", "digit"),
            ("Abc123456", "special"),
            ("Abbb1234!", "repeated"),
            ("Qwerty12!", "common"),
            ("A1!" + "a" * 130, "at most 128"),
        ],
    )
    def test_reports_each_broken_rule(self, password, rule):
        problems = check_password_policy(password)
        assert any(rule in problem for problem in problems), problems

    def test_non_string(self):
        assert check_password_policy(None) == ["password must be a string"]


class TestAnswers:
    def test_normalization(self):
        assert normalize_answer("  São   Paulo ") == "são paulo"
        assert normalize_answer("ＲＥＸ") == "rex"

    @pytest.mark.parametrize("answer", ["x", " ", "aaaa", "a" * 101])
    def test_rejected_answers(self, answer):
        assert check_answer(answer)

    def test_accepted_answer(self):
        assert check_answer("Rex") == []


class TestHashing:
    def test_password_round_trip(self, fast_hashing):
        stored, algo = fast_hashing.hash_password("Abc12345!")
        assert algo == PASSWORD_ALGO
        assert stored.startswith("$argon2id$")
        assert fast_hashing.verify_password(stored, algo, "Abc12345!")
        assert not fast_hashing.verify_password(stored, algo, "Abc12345?")

    def test_unknown_algorithm_never_verifies(self, fast_hashing):
        stored, _ = fast_hashing.hash_password("Abc12345!")
        assert not fast_hashing.verify_password(stored, "bcrypt", "Abc12345!")

    def test_garbage_hash_never_verifies(self, fast_hashing):
        assert not fast_hashing.verify_password("not-a-hash", PASSWORD_ALGO, "Abc12345!")
        assert not fast_hashing.verify_answer("not-a-hash", "rex")

    @pytest.mark.asyncio
    async def test_answers_compare_normalized(self, fast_hashing):
        stored = await fast_hashing.hash_answer_async("Rex")
        assert await fast_hashing.verify_answer_async(stored, "  REX ")
        assert not await fast_hashing.verify_answer_async(stored, "Max")
