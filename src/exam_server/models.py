"""
exam_server/models.py

Request / response DTOs for the exam endpoint.

The inbound payload historically used ``segments`` and ``content``; both
spellings are accepted alongside ``segment`` and ``supplement``.
"""

from __future__ import annotations

from typing import Final

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# Category values that mark a multiple-choice question (compared lower-cased).
MULTIPLE_CHOICE_CATEGORIES: Final[frozenset[str]] = frozenset(
    {"multiple-choice", "multiple_choice", "choice", "选择题"}
)


class Question(BaseModel):
    """One exam question. Immutable once parsed.

    Attributes:
        segment: Competition segment (``prelim`` / ``final``).
        paper: Paper tag, e.g. ``TEST`` or ``EXAM_HARD``.
        id: Question number within the paper.
        category: Question category; see :data:`MULTIPLE_CHOICE_CATEGORIES`.
        text: The question itself (``question`` on the wire).
        supplement: Optional extra context such as the option list.
    """

    model_config = ConfigDict(frozen=True)

    segment: str = Field("", validation_alias=AliasChoices("segment", "segments"))
    paper: str = ""
    id: int = 0
    category: str = ""
    text: str = Field("", validation_alias=AliasChoices("question", "text"))
    supplement: str | None = Field(
        None, validation_alias=AliasChoices("supplement", "content")
    )

    @property
    def is_multiple_choice(self) -> bool:
        return self.category.strip().lower() in MULTIPLE_CHOICE_CATEGORIES

    @property
    def full_text(self) -> str:
        """Question text with the supplement appended on its own line."""
        if self.supplement and self.supplement.strip():
            return f"{self.text}\nsupplement: {self.supplement.strip()}"
        return self.text


class Answer(BaseModel):
    """Response body. ``segment``/``paper``/``id`` always echo the question."""

    model_config = ConfigDict(frozen=True)

    segment: str
    paper: str
    id: int
    answer: str

    @classmethod
    def for_question(cls, question: Question, text: str) -> "Answer":
        return cls(
            segment=question.segment,
            paper=question.paper,
            id=question.id,
            answer=text,
        )
