from __future__ import annotations

import asyncio
import re
import unicodedata
from typing import List, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from portalauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIAL_CHARS = "@$!%*?&"
_COMMON_SEQUENCES = ("123456", "abcdef", "qwerty", "password")

ANSWER_MIN_LENGTH = 2
ANSWER_MAX_LENGTH = 100

_WHITESPACE = re.compile(r"\s+")


def check_password_policy(password: str) -> List[str]:
    """Return the policy rules ``password`` violates; empty means acceptable."""
    if not isinstance(password, str):
        return ["password must be a string"]
    problems: List[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.append(f"at least {PASSWORD_MIN_LENGTH} characters")
    if len(password) > PASSWORD_MAX_LENGTH:
        problems.append(f"at most {PASSWORD_MAX_LENGTH} characters")
    if not any(c.islower() for c in password):
        problems.append("at least one lowercase letter")
    if not any(c.isupper() for c in password):
        problems.append("at least one uppercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("at least one digit")
    if not any(c in PASSWORD_SPECIAL_CHARS for c in password):
        problems.append(f"at least one special character ({PASSWORD_SPECIAL_CHARS})")
    if re.search(r"(.)\1\1", password):
        problems.append("no character repeated three times in a row")
    lowered = password.lower()
    if any(seq in lowered for seq in _COMMON_SEQUENCES):
        problems.append("no common sequences")
    return problems


def normalize_answer(answer: str) -> str:
    """Canonical form hashed for security answers: NFKC, lowercase, single spaces."""
    text = unicodedata.normalize("NFKC", answer or "")
    return _WHITESPACE.sub(" ", text.strip().lower())


def check_answer(answer: str) -> List[str]:
    if not isinstance(answer, str):
        return ["answer must be a string"]
    trimmed = answer.strip()
    problems: List[str] = []
    if len(trimmed) < ANSWER_MIN_LENGTH:
        problems.append(f"answer must be at least {ANSWER_MIN_LENGTH} characters")
    if len(trimmed) > ANSWER_MAX_LENGTH:
        problems.append(f"answer must be at most {ANSWER_MAX_LENGTH} characters")
    normalized = normalize_answer(trimmed).replace(" ", "")
    if normalized and len(set(normalized)) == 1 and len(normalized) > 1:
        problems.append("answer cannot be a single repeated character")
    return problems


class PasswordHashing:
    """argon2id hashing for passwords and security answers.

    Hashing is CPU-bound on purpose; the async wrappers push it to a worker
    thread so the event loop keeps serving other requests.
    """

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, stored_hash: str, algo: str, password: str) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def hash_answer(self, answer: str) -> str:
        return self._hasher.hash(normalize_answer(answer))

    def verify_answer(self, stored_hash: str, answer: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, normalize_answer(answer))
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("answer_hash_unverifiable")
            return False

    async def hash_password_async(self, password: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self.hash_password, password)

    async def verify_password_async(self, stored_hash: str, algo: str, password: str) -> bool:
        return await asyncio.to_thread(self.verify_password, stored_hash, algo, password)

    async def hash_answer_async(self, answer: str) -> str:
        return await asyncio.to_thread(self.hash_answer, answer)

    async def verify_answer_async(self, stored_hash: str, answer: str) -> bool:
        return await asyncio.to_thread(self.verify_answer, stored_hash, answer)
