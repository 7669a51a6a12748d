"""tests/conftest.py

Pytest configuration and shared fixtures for the exam-server test suite.

Everything runs offline: language-model backends and the partner API are
served by :class:`FakeBackends` through ``httpx.MockTransport``, and the
exam database is an in-memory SQLite engine.
"""

from __future__ import annotations

# Standard Library
import json
import threading
from collections.abc import Callable, Iterator
from typing import Any, Union

# Third-Party Libraries
import httpx
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

# Local Modules
from exam_server.backend_client import BackendClient
from exam_server.models import Question
from exam_server.settings import BackendSettings, ExamSettings

LLM_BASE_URL = "http://llm.test"
PARTNER_BASE_URL = "http://partner.test"

BACKEND_NAMES: tuple[str, ...] = (
    "classify",
    "knowledge",
    "sql_generate",
    "data_query",
    "final_result",
    "choice_match",
    "tool_decision",
    "tool_result",
)

Reply = Union[str, httpx.Response, Exception, Callable[[dict[str, Any]], Any]]


def backend(name: str) -> BackendSettings:
    """Backend block whose chat id is the backend name."""
    return BackendSettings(
        base_url=LLM_BASE_URL,
        chat_id=name,
        session_id=f"session-{name}",
        authorization=f"Bearer {name}-token",
        timeout_seconds=2.0,
    )


def envelope(answer: str, session_id: str, code: int = 0) -> dict[str, Any]:
    return {
        "code": code,
        "data": {"answer": answer, "session_id": session_id},
        "message": "" if code == 0 else "backend error",
    }


class FakeBackends:
    """Scripted language-model backends plus partner API.

    Replies are queued per chat id; the last queued reply repeats once the
    queue is down to one entry. A reply may be an answer string, a ready
    ``httpx.Response``, an exception to raise, or a callable receiving the
    request body and returning any of those.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._replies: dict[str, list[Reply]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.partner: dict[str, Any] = {}
        self.partner_calls: list[httpx.Request] = []

    def reply(self, chat_id: str, *replies: Reply) -> None:
        with self._lock:
            self._replies.setdefault(chat_id, []).extend(replies)

    def calls_to(self, chat_id: str) -> list[dict[str, Any]]:
        return [body for name, body in self.calls if name == chat_id]

    def _next(self, chat_id: str) -> Reply:
        with self._lock:
            queue = self._replies.get(chat_id, [])
            if not queue:
                return ""
            return queue.pop(0) if len(queue) > 1 else queue[0]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return self._partner(request)

        chat_id = request.url.path.split("/")[4]
        body = json.loads(request.content)
        with self._lock:
            self.calls.append((chat_id, body))

        reply = self._next(chat_id)
        if callable(reply) and not isinstance(reply, (httpx.Response, Exception)):
            reply = reply(body)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=envelope(reply, body["session_id"]))

    def _partner(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.partner_calls.append(request)
        reply = self.partner.get(request.url.path)
        if reply is None:
            return httpx.Response(404, json={"message": "no such endpoint"})
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)


@pytest.fixture
def fake_backends() -> FakeBackends:
    return FakeBackends()


@pytest.fixture
def http_client(fake_backends: FakeBackends) -> Iterator[httpx.Client]:
    """``httpx.Client`` wired to :class:`FakeBackends`."""
    client = httpx.Client(transport=httpx.MockTransport(fake_backends.handler))
    yield client
    client.close()


@pytest.fixture
def backend_client(http_client: httpx.Client) -> BackendClient:
    return BackendClient(http_client)


@pytest.fixture
def exam_settings() -> ExamSettings:
    """Settings with every backend pointed at the fake; tool_result left unset."""
    blocks = {name: backend(name) for name in BACKEND_NAMES if name != "tool_result"}
    return ExamSettings(
        _env_file=None,
        **blocks,
        partner_api_base_url=PARTNER_BASE_URL,
        partner_app_id="team-app",
        partner_app_key="team-key",
        database_url="sqlite://",
        dual_path_timeout_seconds=5.0,
        enable_mock_partner=False,
    )


@pytest.fixture
def sqlite_engine() -> Iterator[Engine]:
    """In-memory database shared across threads, seeded with merchants."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as connection:
        connection.execute(
            text(
                "CREATE TABLE merchant_info ("
                "merchant_id TEXT PRIMARY KEY, merchant_name TEXT, "
                "merchant_type TEXT, credit_limit REAL)"
            )
        )
        connection.execute(
            text(
                "INSERT INTO merchant_info VALUES "
                "('M001', 'Alpha Shop', 'ONLINE', 5000.5), "
                "('M002', 'Beta Store', 'OFFLINE', NULL), "
                "('M003', 'Gamma Mart', 'ONLINE', 1200)"
            )
        )
    yield engine
    engine.dispose()


@pytest.fixture
def make_question() -> Callable[..., Question]:
    """Factory for questions with sensible defaults."""

    def _make(**overrides: Any) -> Question:
        fields: dict[str, Any] = {
            "segment": "prelim",
            "paper": "TEST",
            "id": 7,
            "category": "open-ended",
            "text": "What is the answer?",
        }
        fields.update(overrides)
        return Question(**fields)

    return _make
