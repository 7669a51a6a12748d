"""
exam_server/log_context.py

Per-request log id plumbing.

The API middleware binds a short id to :data:`log_id_var`; :class:`LogIdFilter`
copies it onto every record so the format string can print ``%(log_id)s``.
Worker threads see the id because tasks are submitted with a copied context.
"""

from __future__ import annotations

import contextvars
import logging
import uuid

log_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("log_id", default="-")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(log_id)s]: %(message)s"


class LogIdFilter(logging.Filter):
    """Attach the current request's log id to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.log_id = log_id_var.get()
        return True


def new_log_id() -> str:
    """Return a fresh 12-character hex id."""
    return uuid.uuid4().hex[:12]


def configure_logging(level: str = "INFO") -> None:
    """Install the root handler with the log-id aware format."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, LogIdFilter) for f in handler.filters):
            handler.addFilter(LogIdFilter())
