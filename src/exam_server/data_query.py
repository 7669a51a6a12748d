"""
exam_server/data_query.py

Dual-path data-query resolution.

Two independent paths run concurrently on the shared worker pool:

  Path A  SQL-generation backend → extract the ```sql fenced block →
          run it through :class:`~exam_server.query_executor.QueryExecutor`.
  Path B  Direct data-query backend, answer used verbatim.

Both are awaited up to one shared deadline. A path that fails or is still
running at the deadline contributes a ``"path X failed: <reason>"`` marker.
If both failed the answer is ``"no results"``; otherwise a reconciliation
backend merges the two. When it replies with the agree sentinel, path B's
result is returned unchanged.
"""

from __future__ import annotations

import contextvars
import dataclasses
import logging
from concurrent.futures import Executor, Future, wait
from typing import Final

from .backend_client import BackendClient
from .errors import NO_RESULTS, BackendCallError, FormatError
from .models import Question
from .query_executor import QueryExecutor
from .settings import BackendSettings

logger = logging.getLogger("exam-server.data-query")

SQL_START: Final[str] = "```sql"
SQL_END: Final[str] = "```"

PATH_A: Final[str] = "path A"
PATH_B: Final[str] = "path B"


def extract_sql(answer: str) -> str:
    """Return the SQL between the ```sql start marker and the closing fence.

    Raises:
        FormatError: Either marker is missing.
    """
    start = answer.find(SQL_START)
    if start == -1:
        raise FormatError("SQL format error")
    body_start = start + len(SQL_START)
    end = answer.find(SQL_END, body_start)
    if end == -1:
        raise FormatError("SQL format error")
    return answer[body_start:end].strip()


def failure_marker(path: str, reason: str) -> str:
    return f"{path} failed: {reason}"


@dataclasses.dataclass(frozen=True, slots=True)
class PathOutcome:
    """Result of one path.

    Attributes:
        text: Result text, or the failure marker.
        failed: Whether ``text`` is a failure marker.
        sql: Generated SQL (path A only), kept for the reconciliation prompt.
    """

    text: str
    failed: bool = False
    sql: str = ""


@dataclasses.dataclass(frozen=True, slots=True)
class DualPathResult:
    path_a: PathOutcome
    path_b: PathOutcome

    @property
    def both_failed(self) -> bool:
        return self.path_a.failed and self.path_b.failed


def build_reconcile_prompt(question_text: str, result: DualPathResult) -> str:
    return (
        f"user question: {question_text}\n"
        f"result 1: {result.path_a.text}, executed SQL: {result.path_a.sql}\n"
        f"result 2: {result.path_b.text}"
    )


class DataQueryStrategy:
    """Answers data questions by racing SQL execution against a direct model.

    Args:
        client: Shared backend client.
        sql_backend: SQL-generation backend (path A).
        query_backend: Direct data-query backend (path B).
        reconcile_backend: Backend merging the two results.
        executor: Database query executor for path A.
        pool: Process-wide worker pool both paths are submitted to.
        timeout: Shared deadline for both paths, in seconds.
        sentinel: Reconciliation reply meaning "use path B as is".
    """

    def __init__(
        self,
        client: BackendClient,
        sql_backend: BackendSettings,
        query_backend: BackendSettings,
        reconcile_backend: BackendSettings,
        executor: QueryExecutor,
        pool: Executor,
        timeout: float = 30.0,
        sentinel: str = "OK",
    ) -> None:
        self._client = client
        self._sql_backend = sql_backend
        self._query_backend = query_backend
        self._reconcile_backend = reconcile_backend
        self._executor = executor
        self._pool = pool
        self._timeout = timeout
        self._sentinel = sentinel

    def answer(self, question: Question) -> str:
        return self.resolve(question.full_text)

    def resolve(self, question_text: str) -> str:
        logger.info("[data_query] question=%r", question_text[:120])
        result = self.run_paths(question_text)
        logger.info(
            "[data_query] path A=%r (sql=%r) path B=%r",
            result.path_a.text[:200],
            result.path_a.sql,
            result.path_b.text[:200],
        )
        if result.both_failed:
            logger.warning("[data_query] both paths failed, skipping reconciliation")
            return NO_RESULTS
        return self._reconcile(question_text, result)

    def run_paths(self, question_text: str) -> DualPathResult:
        """Run both paths concurrently and wait up to the shared deadline."""
        # Each task gets its own context copy so worker log lines keep the log id.
        future_a = self._pool.submit(
            contextvars.copy_context().run, self._path_a, question_text
        )
        future_b = self._pool.submit(
            contextvars.copy_context().run, self._path_b, question_text
        )
        done, pending = wait((future_a, future_b), timeout=self._timeout)
        for future in pending:
            # Only effective for tasks still queued; running ones are abandoned.
            future.cancel()
        if pending:
            logger.warning(
                "[data_query] %d path(s) still running after %.1fs",
                len(pending),
                self._timeout,
            )
        return DualPathResult(
            path_a=self._collect(PATH_A, future_a, done),
            path_b=self._collect(PATH_B, future_b, done),
        )

    def _collect(
        self, path: str, future: Future[PathOutcome], done: set[Future[PathOutcome]]
    ) -> PathOutcome:
        if future not in done:
            return PathOutcome(
                failure_marker(path, f"timed out after {self._timeout:g}s"), failed=True
            )
        exc = future.exception()
        if exc is not None:
            return PathOutcome(failure_marker(path, str(exc)), failed=True)
        return future.result()

    def _path_a(self, question_text: str) -> PathOutcome:
        sql = ""
        try:
            sql = self._client.call_backend(
                "sql_generate", self._sql_backend, question_text, extract_sql
            )
            logger.info("[data_query] generated SQL: %s", sql)
            rows = self._executor.execute_query(sql)
        except BackendCallError as exc:
            logger.warning("[data_query] path A: %s", exc.cause)
            return PathOutcome(failure_marker(PATH_A, exc.cause), failed=True, sql=sql)
        except Exception as exc:
            logger.error("[data_query] path A crashed: %s", exc, exc_info=True)
            return PathOutcome(failure_marker(PATH_A, str(exc)), failed=True, sql=sql)
        if not rows:
            return PathOutcome(
                failure_marker(PATH_A, "query execution failed"), failed=True, sql=sql
            )
        return PathOutcome(rows, sql=sql)

    def _path_b(self, question_text: str) -> PathOutcome:
        try:
            answer = self._client.call_backend(
                "data_query", self._query_backend, question_text
            )
        except BackendCallError as exc:
            logger.warning("[data_query] path B: %s", exc.cause)
            return PathOutcome(failure_marker(PATH_B, exc.cause), failed=True)
        except Exception as exc:
            logger.error("[data_query] path B crashed: %s", exc, exc_info=True)
            return PathOutcome(failure_marker(PATH_B, str(exc)), failed=True)
        return PathOutcome(answer)

    def _reconcile(self, question_text: str, result: DualPathResult) -> str:
        try:
            merged = self._client.call_backend(
                "final_result",
                self._reconcile_backend,
                build_reconcile_prompt(question_text, result),
            )
        except BackendCallError as exc:
            fallback = result.path_a if result.path_b.failed else result.path_b
            logger.warning(
                "[data_query] reconciliation failed (%s), falling back to %s",
                exc.cause,
                PATH_A if fallback is result.path_a else PATH_B,
            )
            return fallback.text

        if merged == self._sentinel:
            logger.info("[data_query] paths agree, using path B")
            return result.path_b.text
        return merged
