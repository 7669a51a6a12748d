"""
exam_server/query_executor.py

Runs one read statement and renders the rows as text.

Only a single SELECT or WITH statement is executed; anything else is refused
before it reaches the database.

The result looks like ``[[v1, v2], [v3, v4]]`` with ``null`` for SQL NULL.
Zero rows yields the "no results" literal; any failure yields ``""``. The
executor never raises, because it runs inside a pooled task whose sibling
must keep going.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any, Final

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .errors import NO_RESULTS

logger = logging.getLogger("exam-server.db")

# SELECT or WITH, optionally after leading "--" comment lines.
_READ_STATEMENT: Final[re.Pattern[str]] = re.compile(
    r"^\s*(?:--[^\n]*\n\s*)*(?:select|with)\b", re.IGNORECASE
)


class QueryExecutor:
    """Thin wrapper around a SQLAlchemy engine.

    Args:
        engine: Engine to run statements on. ``pool_pre_ping`` is recommended
            so stale connections are recycled between competition rounds.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @classmethod
    def from_url(cls, url: str) -> "QueryExecutor":
        engine = create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10)
        return cls(engine)

    def execute_query(self, sql: str) -> str:
        """Execute ``sql`` and serialise the result set.

        Args:
            sql: A single SELECT (or WITH ... SELECT) statement. Anything
                else, including several statements, is refused.

        Returns:
            Bracketed list-of-lists text, ``"no results"`` for zero rows,
            or ``""`` if the statement was refused or execution failed.
        """
        if not is_read_statement(sql):
            logger.warning("[db] refusing non-read statement: %s", sql)
            return ""
        logger.info("[db] executing: %s", sql)
        try:
            with self._engine.connect() as connection:
                rows = connection.execute(text(sql)).fetchall()
        except Exception as exc:
            logger.error("[db] query failed, returning empty string: %s", exc, exc_info=True)
            return ""

        if not rows:
            return NO_RESULTS
        rendered = format_rows(rows)
        logger.info("[db] %d row(s)", len(rows))
        return rendered

    def dispose(self) -> None:
        self._engine.dispose()


def is_read_statement(sql: str) -> bool:
    """True for exactly one SELECT / WITH statement (a trailing ``;`` is allowed)."""
    body = sql.strip().rstrip(";")
    return bool(_READ_STATEMENT.match(body)) and ";" not in body


def format_rows(rows: Iterable[Sequence[Any]]) -> str:
    """Render rows as ``[[a, b], [c, d]]``."""
    return "[" + ", ".join(
        "[" + ", ".join(_cell(value) for value in row) + "]" for row in rows
    ) + "]"


def _cell(value: Any) -> str:
    if value is None:
        return "null"
    return str(value)
