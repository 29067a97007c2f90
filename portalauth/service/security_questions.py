from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from portalauth.logging import get_logger
from portalauth.service.errors import ConflictError, NotFoundError, ValidationError
from portalauth.service.passwords import PasswordHashing, check_answer
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import MAX_SECURITY_QUESTIONS_PER_USER, SecurityQuestion

logger = get_logger(__name__)


@dataclass
class SecurityQuestionStatus:
    configured: List[SecurityQuestion] = field(default_factory=list)
    available: List[SecurityQuestion] = field(default_factory=list)
    max_questions: int = MAX_SECURITY_QUESTIONS_PER_USER

    @property
    def configured_count(self) -> int:
        return len(self.configured)

    @property
    def has_questions(self) -> bool:
        return bool(self.configured)


class SecurityQuestionService:
    """Catalog of security questions and each user's hashed answers."""

    def __init__(self, store, hashing: PasswordHashing) -> None:
        self.store = store
        self.hashing = hashing

    def list_questions(self) -> List[SecurityQuestion]:
        return self.store.list_security_questions()

    def status(self, user_id: str) -> SecurityQuestionStatus:
        catalog = self.store.list_security_questions()
        configured_ids = {a.question_id for a in self.store.list_user_security_answers(user_id)}
        by_id = {q.id: q for q in self.store.list_security_questions(active_only=False)}
        return SecurityQuestionStatus(
            configured=[by_id[qid] for qid in sorted(configured_ids) if qid in by_id],
            available=[q for q in catalog if q.id not in configured_ids],
        )

    @staticmethod
    def _validate_answer(answer: str, question_id: int) -> None:
        problems = check_answer(answer)
        if problems:
            raise ValidationError(
                "invalid security answer",
                detail={"question_id": question_id, "errors": problems},
            )

    def _require_question(self, question_id: int) -> SecurityQuestion:
        question = self.store.get_security_question(question_id)
        if question is None or not question.is_active:
            raise NotFoundError(
                "security question not found", detail={"question_id": question_id}
            )
        return question

    def validate(self, answers: Sequence[Tuple[int, str]]) -> None:
        """Check a batch of answers without touching stored state."""
        if not 1 <= len(answers) <= MAX_SECURITY_QUESTIONS_PER_USER:
            raise ValidationError(
                f"provide between 1 and {MAX_SECURITY_QUESTIONS_PER_USER} security questions",
                detail={"count": len(answers)},
            )
        ids = [qid for qid, _ in answers]
        if len(set(ids)) != len(ids):
            raise ValidationError("duplicate security questions", detail={"question_ids": ids})
        for qid, answer in answers:
            self._require_question(qid)
            self._validate_answer(answer, qid)

    async def setup(
        self, user_id: str, answers: Sequence[Tuple[int, str]]
    ) -> SecurityQuestionStatus:
        self.validate(answers)
        hashed = [(qid, await self.hashing.hash_answer_async(answer)) for qid, answer in answers]
        try:
            self.store.add_security_answers(user_id, hashed)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("security_questions_configured", user_id=user_id, count=len(hashed))
        return self.status(user_id)

    async def update_answer(self, user_id: str, question_id: int, answer: str) -> None:
        self._validate_answer(answer, question_id)
        answer_hash = await self.hashing.hash_answer_async(answer)
        if not self.store.update_security_answer(user_id, question_id, answer_hash):
            raise NotFoundError(
                "security question is not configured", detail={"question_id": question_id}
            )
        logger.info("security_answer_updated", user_id=user_id, question_id=question_id)

    def remove(self, user_id: str, question_id: int) -> None:
        if not self.store.deactivate_security_answer(user_id, question_id):
            raise NotFoundError(
                "security question is not configured", detail={"question_id": question_id}
            )
        logger.info("security_answer_removed", user_id=user_id, question_id=question_id)

    def stored_answer_hash(self, user_id: str, question_id: int) -> Optional[str]:
        for answer in self.store.list_user_security_answers(user_id):
            if answer.question_id == question_id:
                return answer.answer_hash
        return None

    def first_question_id(self, user_id: str) -> Optional[int]:
        answers = self.store.list_user_security_answers(user_id)
        return answers[0].question_id if answers else None
