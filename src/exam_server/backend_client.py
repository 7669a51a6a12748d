"""
exam_server/backend_client.py

Uniform HTTP client for every language-model backend the server talks to.

Wire format:
    POST <base>/api/v1/chats/<chat_id>/completions
    {"question": "...", "stream": false, "session_id": "..."}

    → {"code": 0, "data": {"answer": "...", "session_id": "...", ...}, "message": ""}

Only ``code == 0`` with a non-blank ``data.answer`` counts as success. The
trimmed answer is handed to a caller-supplied post-processor; anything that
goes wrong (parameters, transport, envelope or post-processing) surfaces as
a single :class:`~exam_server.errors.BackendCallError`. No retries happen here.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

import httpx

from .errors import BackendCallError, ExamError, ParameterError, UpstreamError
from .settings import BackendSettings

logger = logging.getLogger("exam-server.backend")

T = TypeVar("T")


def identity(answer: str) -> str:
    """Post-processor that returns the answer unchanged."""
    return answer


class BackendClient:
    """Synchronous JSON client shared by all strategies.

    Args:
        http: Optional pre-built ``httpx.Client``. Tests inject one backed by
            ``httpx.MockTransport``; production builds a plain client.
    """

    def __init__(self, http: httpx.Client | None = None) -> None:
        self._http = http or httpx.Client()

    def close(self) -> None:
        self._http.close()

    def call(
        self,
        name: str,
        base_url: str,
        chat_id: str,
        session_id: str,
        authorization: str,
        question: str,
        post_process: Callable[[str], T],
        *,
        timeout: float = 25.0,
        verify_session: bool = False,
    ) -> T:
        """Call one backend and post-process its answer.

        Args:
            name: Display name used in logs and error messages.
            base_url: Backend base address.
            chat_id: Conversation id (path segment).
            session_id: Session id sent in the body.
            authorization: ``Authorization`` header value.
            question: Prompt text.
            post_process: Maps the trimmed answer to the typed result; may raise.
            timeout: HTTP timeout in seconds.
            verify_session: Reject responses whose ``data.session_id`` differs
                from ``session_id``.

        Returns:
            Whatever ``post_process`` returns.

        Raises:
            BackendCallError: On any failure.
        """
        try:
            _validate(base_url, chat_id, authorization, question)
            url = f"{base_url.rstrip('/')}/api/v1/chats/{chat_id}/completions"
            logger.info("[%s] POST %s session=%s", name, url, session_id)
            data = self._post(url, authorization, session_id, question, timeout)
            if verify_session and data.get("session_id") != session_id:
                raise BackendCallError(
                    name,
                    f"session mismatch: sent {session_id!r}, got {data.get('session_id')!r}",
                )
            answer = data.get("answer")
            if not isinstance(answer, str) or not answer.strip():
                raise BackendCallError(name, "answer is empty")
            return post_process(answer.strip())
        except BackendCallError as exc:
            logger.warning("[%s] %s", name, exc.cause)
            raise
        except ExamError as exc:
            logger.warning("[%s] rejected: %s", name, exc)
            raise BackendCallError(name, str(exc)) from exc
        except httpx.TimeoutException as exc:
            logger.warning("[%s] timed out: %s", name, exc)
            raise BackendCallError(name, f"timed out ({exc})") from exc
        except Exception as exc:
            logger.error("[%s] call failed: %s", name, exc, exc_info=True)
            raise BackendCallError(name, str(exc) or type(exc).__name__) from exc

    def call_backend(
        self,
        name: str,
        backend: BackendSettings,
        question: str,
        post_process: Callable[[str], T] = identity,  # type: ignore[assignment]
        *,
        verify_session: bool = False,
    ) -> T:
        """Convenience wrapper taking a :class:`BackendSettings` block."""
        return self.call(
            name,
            backend.base_url,
            backend.chat_id,
            backend.session_id,
            backend.authorization,
            question,
            post_process,
            timeout=backend.timeout_seconds,
            verify_session=verify_session,
        )

    def _post(
        self,
        url: str,
        authorization: str,
        session_id: str,
        question: str,
        timeout: float,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "question": question,
            "stream": False,
            "session_id": session_id or "",
        }
        response = self._http.post(
            url,
            json=payload,
            headers={"Authorization": authorization},
            timeout=timeout,
        )
        logger.debug("raw response: %s", response.text[:500])
        if not response.is_success:
            raise UpstreamError(f"HTTP status {response.status_code}")

        body = response.json()
        if not isinstance(body, dict):
            raise UpstreamError("response body is not a JSON object")
        code = body.get("code", -1)
        if code != 0:
            raise UpstreamError(
                f"business code {code}, message: {body.get('message') or 'unknown error'}"
            )
        data = body.get("data")
        if not isinstance(data, dict):
            raise UpstreamError("response is missing the data field")
        return data


def _validate(
    base_url: str, chat_id: str, authorization: str, question: str
) -> None:
    for label, value in (
        ("base_url", base_url),
        ("chat_id", chat_id),
        ("authorization", authorization),
        ("question", question),
    ):
        if not value or not value.strip():
            raise ParameterError(f"{label} must not be empty")
