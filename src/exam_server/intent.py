"""
exam_server/intent.py

Question intent classification.

The classification backend answers with a JSON object such as
``{"requestType": "data_query"}``. Anything unexpected (transport failure,
business error, session mismatch, bad JSON, unknown label) falls back to
:attr:`Intent.KNOWLEDGE_QA` so a question is always answered somehow.
"""

from __future__ import annotations

import json
import logging
from enum import StrEnum

from .backend_client import BackendClient
from .errors import BackendCallError, FormatError
from .settings import BackendSettings

logger = logging.getLogger("exam-server.intent")


class Intent(StrEnum):
    """Resolution strategy chosen for a question."""

    KNOWLEDGE_QA = "knowledge_qa"
    TOOL_CALL = "tool_call"
    DATA_QUERY = "data_query"


def parse_request_type(answer: str) -> Intent:
    """Extract ``requestType`` from the classifier's JSON answer.

    Raises:
        FormatError: The answer is not a JSON object, lacks ``requestType``
            or names an unknown intent.
    """
    try:
        payload = json.loads(answer)
    except json.JSONDecodeError as exc:
        raise FormatError(f"classifier answer is not JSON ({exc})") from exc
    if not isinstance(payload, dict):
        raise FormatError("classifier answer is not a JSON object")

    value = payload.get("requestType")
    if not isinstance(value, str) or not value.strip():
        raise FormatError("requestType missing or empty")
    try:
        return Intent(value.strip())
    except ValueError as exc:
        raise FormatError(f"unknown requestType {value.strip()!r}") from exc


class IntentClassifier:
    """Classifies questions through the classification backend.

    Args:
        client: Shared backend client.
        backend: Classification backend settings.
    """

    def __init__(self, client: BackendClient, backend: BackendSettings) -> None:
        self._client = client
        self._backend = backend

    def classify(self, question: str) -> Intent:
        """Return the intent for ``question``; never raises."""
        try:
            intent = self._client.call_backend(
                "classify",
                self._backend,
                question,
                parse_request_type,
                verify_session=True,
            )
        except BackendCallError as exc:
            logger.warning(
                "[classifier] %s: defaulting to %s", exc.cause, Intent.KNOWLEDGE_QA
            )
            return Intent.KNOWLEDGE_QA
        logger.info("[classifier] %r -> %s", question[:80], intent)
        return intent
