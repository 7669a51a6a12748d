"""
exam_server/choice.py

Maps a free-text answer onto a multiple-choice option letter.
"""

from __future__ import annotations

import logging
import re
from typing import Final

from .backend_client import BackendClient
from .errors import CANNOT_MATCH, BackendCallError, FormatError
from .models import Question
from .settings import BackendSettings

logger = logging.getLogger("exam-server.choice")

# "A", "A) Paris", "(B).", "C: ..." but not "Answer ...".
_OPTION_LETTER: Final[re.Pattern[str]] = re.compile(r"^\s*[\(\[（]?([A-D])(?![A-Za-z])")


def extract_option_letter(answer: str) -> str:
    """Return the option letter the answer starts with.

    Raises:
        FormatError: The answer does not start with ``A``-``D``.
    """
    match = _OPTION_LETTER.match(answer)
    if not match:
        raise FormatError(f"no leading option letter in {answer[:60]!r}")
    return match.group(1)


def build_choice_prompt(question: Question, resolved: str) -> str:
    return (
        f"Question and options:\n{question.full_text}\n\n"
        f"Reference answer:\n{resolved}\n\n"
        "Reply with the single letter (A, B, C or D) of the option that matches "
        "the reference answer, and nothing else."
    )


class ChoiceMatcher:
    def __init__(self, client: BackendClient, backend: BackendSettings) -> None:
        self._client = client
        self._backend = backend

    def match(self, question: Question, resolved: str) -> str:
        """Return the matching option letter, or the "cannot match" literal."""
        try:
            letter = self._client.call_backend(
                "choice_match",
                self._backend,
                build_choice_prompt(question, resolved),
                extract_option_letter,
            )
        except BackendCallError as exc:
            logger.warning("[choice] question %s: %s", question.id, exc.cause)
            return CANNOT_MATCH
        logger.info("[choice] question %s -> %s", question.id, letter)
        return letter
