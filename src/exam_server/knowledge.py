"""
exam_server/knowledge.py

Knowledge question answering with a single retry.

The knowledge backend is asked once; an empty or "no answer" reply triggers
exactly one more attempt. If that also comes back empty the answer is
``"not found"``. Multiple-choice questions then go through the choice matcher.
"""

from __future__ import annotations

import logging
from typing import Final

from .backend_client import BackendClient
from .choice import ChoiceMatcher
from .errors import NOT_FOUND, BackendCallError
from .models import Question
from .settings import BackendSettings

logger = logging.getLogger("exam-server.knowledge")

NO_ANSWER_PHRASES: Final[tuple[str, ...]] = (
    "not found",
    "no answer",
    "cannot answer",
    "unable to answer",
    "没找到答案",
    "无结果",
    "无法回答",
)

_ATTEMPTS: Final[int] = 2


def is_no_answer(answer: str | None) -> bool:
    """True if ``answer`` is blank or contains a no-answer phrase."""
    if answer is None or not answer.strip():
        return True
    lowered = answer.lower()
    return any(phrase in lowered for phrase in NO_ANSWER_PHRASES)


class KnowledgeStrategy:
    """Answers questions from the knowledge backend.

    Args:
        client: Shared backend client.
        backend: Knowledge backend settings.
        choice_matcher: Used for multiple-choice questions.
    """

    def __init__(
        self,
        client: BackendClient,
        backend: BackendSettings,
        choice_matcher: ChoiceMatcher,
    ) -> None:
        self._client = client
        self._backend = backend
        self._choice_matcher = choice_matcher

    def resolve(self, question_text: str) -> str:
        """Free-text answer for ``question_text`` or the "not found" literal."""
        for attempt in range(1, _ATTEMPTS + 1):
            try:
                answer = self._client.call_backend(
                    f"knowledge#{attempt}", self._backend, question_text
                )
            except BackendCallError as exc:
                logger.warning("[knowledge] attempt %d failed: %s", attempt, exc.cause)
                answer = ""
            if not is_no_answer(answer):
                return answer
            logger.info("[knowledge] attempt %d returned no answer", attempt)
        return NOT_FOUND

    def answer(self, question: Question) -> str:
        resolved = self.resolve(question.full_text)
        if question.is_multiple_choice:
            return self._choice_matcher.match(question, resolved)
        return resolved
