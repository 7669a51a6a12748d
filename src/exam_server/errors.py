"""
exam_server/errors.py

Error taxonomy for the answer pipeline.

Every failure a strategy can recover from is an :class:`ExamError` subclass.
Each class carries a fixed ``literal``: the user-visible text substituted
into the answer when the strategy degrades instead of propagating.

Only unexpected exceptions (anything that is not an ``ExamError``) are meant
to reach the orchestrator's outer guard.
"""

from __future__ import annotations

from typing import Final

# ---------------------------------------------------------------------------
# Fixed answer literals
# ---------------------------------------------------------------------------

NO_RESULTS: Final[str] = "no results"
NOT_FOUND: Final[str] = "not found"
CANNOT_MATCH: Final[str] = "cannot match"
SYSTEM_BUSY: Final[str] = "system busy, try again"


class ExamError(Exception):
    """Base class for recoverable pipeline failures."""

    literal: str = SYSTEM_BUSY

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.literal)
        self.detail = message

    def user_message(self) -> str:
        """Render the degraded answer text for this failure."""
        if self.detail and self.detail != self.literal:
            return f"{self.literal}: {self.detail}"
        return self.literal


class ParameterError(ExamError):
    """Missing or malformed input, or missing tool arguments."""

    literal = "tool parameters missing or malformed"


class FormatError(ExamError):
    """A backend answer does not match the embedded grammar we expect."""

    literal = "format error"


class CallTimeoutError(ExamError):
    """A call or the dual-path wait exceeded its bound."""

    literal = "tool API call timed out"


class AuthError(ExamError):
    """The partner API rejected our credentials."""

    literal = "tool authentication failed, check app id/key"


class UpstreamError(ExamError):
    """Any other non-2xx or business-code failure from a remote service."""

    literal = "tool API call failed"


class UnsupportedToolError(ParameterError):
    """A tool name outside the registry."""

    literal = "unsupported tool"


class InternalError(ExamError):
    """Catch-all for failures with no better classification."""

    literal = SYSTEM_BUSY


class BackendCallError(UpstreamError):
    """The single failure type raised by :class:`~exam_server.backend_client.BackendClient`.

    Attributes:
        backend: Display name of the backend that failed.
        cause: Human-readable reason, without the backend prefix.
    """

    literal = "backend call failed"

    def __init__(self, backend: str, cause: str) -> None:
        self.backend = backend
        self.cause = cause
        super().__init__(f"[{backend}] call failed: {cause}")
