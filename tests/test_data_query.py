"""tests/test_data_query.py

Unit tests for the dual-path data-query strategy (exam_server/data_query.py).

Path A runs real SQL against the in-memory SQLite fixture; the language-model
backends are served by FakeBackends.
"""

from __future__ import annotations

# Standard Library
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from typing import Any

# Third-Party Libraries
import httpx
import pytest
from sqlalchemy.engine import Engine

# Local Modules
from conftest import FakeBackends, backend
from exam_server.backend_client import BackendClient
from exam_server.data_query import DataQueryStrategy, extract_sql
from exam_server.errors import NO_RESULTS, FormatError
from exam_server.log_context import log_id_var
from exam_server.models import Question
from exam_server.query_executor import QueryExecutor

_ONLINE_SQL = (
    "```sql\nSELECT merchant_id FROM merchant_info "
    "WHERE merchant_type = 'ONLINE' ORDER BY merchant_id\n```"
)


@pytest.fixture
def pool() -> Iterator[ThreadPoolExecutor]:
    executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="test-data-query")
    yield executor
    executor.shutdown(wait=True, cancel_futures=True)


def _strategy(
    client: BackendClient,
    engine: Engine,
    pool: ThreadPoolExecutor,
    timeout: float = 5.0,
) -> DataQueryStrategy:
    return DataQueryStrategy(
        client,
        backend("sql_generate"),
        backend("data_query"),
        backend("final_result"),
        QueryExecutor(engine),
        pool,
        timeout=timeout,
        sentinel="OK",
    )


@pytest.fixture
def strategy(
    backend_client: BackendClient, sqlite_engine: Engine, pool: ThreadPoolExecutor
) -> DataQueryStrategy:
    return _strategy(backend_client, sqlite_engine, pool)


# ---------------------------------------------------------------------------
# SQL extraction
# ---------------------------------------------------------------------------


class TestExtractSql:
    def test_fenced_block(self) -> None:
        answer = "Here is the query:\n```sql\nSELECT 1;\n```\nHope it helps."
        assert extract_sql(answer) == "SELECT 1;"

    @pytest.mark.parametrize(
        "answer",
        ["SELECT 1", "```\nSELECT 1\n```", "```sql\nSELECT 1"],
        ids=["no-fence", "no-sql-marker", "no-closing-fence"],
    )
    def test_missing_marker(self, answer: str) -> None:
        with pytest.raises(FormatError) as excinfo:
            extract_sql(answer)
        assert str(excinfo.value) == "SQL format error"


# ---------------------------------------------------------------------------
# Dual paths
# ---------------------------------------------------------------------------


class TestRunPaths:
    """Both paths run and report their own outcome."""

    def test_both_succeed(self, strategy: DataQueryStrategy, fake_backends: FakeBackends) -> None:
        fake_backends.reply("sql_generate", _ONLINE_SQL)
        fake_backends.reply("data_query", "M001 and M003")

        result = strategy.run_paths("online merchants?")

        assert result.path_a.text == "[[M001], [M003]]"
        assert "merchant_type = 'ONLINE'" in result.path_a.sql
        assert not result.path_a.failed
        assert result.path_b.text == "M001 and M003"
        assert not result.path_b.failed

    def test_missing_fence_marks_path_a(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        """SQL without a fence degrades path A to 'path A failed: SQL format error'."""
        fake_backends.reply("sql_generate", "SELECT * FROM merchant_info")
        fake_backends.reply("data_query", "three merchants")

        result = strategy.run_paths("how many merchants?")

        assert result.path_a.failed
        assert result.path_a.text == "path A failed: SQL format error"
        assert result.path_b.text == "three merchants"

    def test_execution_failure_marks_path_a(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        fake_backends.reply("sql_generate", "```sql\nSELECT * FROM missing_table\n```")
        fake_backends.reply("data_query", "x")

        result = strategy.run_paths("q")

        assert result.path_a.failed
        assert result.path_a.text.startswith("path A failed:")
        assert result.path_a.sql == "SELECT * FROM missing_table"

    def test_zero_rows_is_a_result(self, strategy: DataQueryStrategy, fake_backends: FakeBackends) -> None:
        fake_backends.reply(
            "sql_generate", "```sql\nSELECT * FROM merchant_info WHERE merchant_id = 'none'\n```"
        )
        fake_backends.reply("data_query", "x")
        result = strategy.run_paths("q")
        assert result.path_a.text == NO_RESULTS
        assert not result.path_a.failed

    def test_backend_failure_marks_path_b(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        fake_backends.reply("sql_generate", _ONLINE_SQL)
        fake_backends.reply("data_query", httpx.Response(500))
        result = strategy.run_paths("q")
        assert result.path_b.failed
        assert result.path_b.text.startswith("path B failed:")
        assert "500" in result.path_b.text

    def test_log_id_propagates_to_workers(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        """Both paths see the caller's log id."""
        seen: list[str] = []

        def _record(body: dict[str, Any]) -> str:
            seen.append(log_id_var.get())
            return "x"

        fake_backends.reply("sql_generate", lambda body: (_record(body), _ONLINE_SQL)[1])
        fake_backends.reply("data_query", _record)

        token = log_id_var.set("req-123")
        try:
            strategy.run_paths("q")
        finally:
            log_id_var.reset(token)

        assert seen == ["req-123", "req-123"]

    def test_deadline_marks_slow_path_failed(
        self,
        backend_client: BackendClient,
        sqlite_engine: Engine,
        pool: ThreadPoolExecutor,
        fake_backends: FakeBackends,
    ) -> None:
        """A path still running at the deadline is reported as failed."""
        release = threading.Event()

        def _slow(body: dict[str, Any]) -> str:
            release.wait(5)
            return "late answer"

        fake_backends.reply("sql_generate", _ONLINE_SQL)
        fake_backends.reply("data_query", _slow)
        strategy = _strategy(backend_client, sqlite_engine, pool, timeout=0.5)

        try:
            result = strategy.run_paths("q")
        finally:
            release.set()

        assert not result.path_a.failed
        assert result.path_b.failed
        assert result.path_b.text.startswith("path B failed: timed out")


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class TestResolve:
    """Final answer selection."""

    def test_both_failed_is_no_results_without_reconciliation(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        fake_backends.reply("sql_generate", "no sql here")
        fake_backends.reply("data_query", httpx.Response(500))

        assert strategy.resolve("q") == NO_RESULTS
        assert fake_backends.calls_to("final_result") == []

    def test_sentinel_returns_path_b_verbatim(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        """The two-character sentinel means 'use path B', never the sentinel itself."""
        fake_backends.reply("sql_generate", _ONLINE_SQL)
        fake_backends.reply("data_query", "Two online merchants: M001, M003")
        fake_backends.reply("final_result", "OK")

        assert strategy.resolve("q") == "Two online merchants: M001, M003"

    def test_merged_answer_returned_verbatim(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        fake_backends.reply("sql_generate", _ONLINE_SQL)
        fake_backends.reply("data_query", "M001")
        fake_backends.reply("final_result", "M001, M003")

        assert strategy.resolve("online merchants?") == "M001, M003"

    def test_reconcile_prompt_contains_both_results_and_sql(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        fake_backends.reply("sql_generate", _ONLINE_SQL)
        fake_backends.reply("data_query", "M001")
        fake_backends.reply("final_result", "merged")

        strategy.resolve("online merchants?")

        prompt = fake_backends.calls_to("final_result")[0]["question"]
        assert "online merchants?" in prompt
        assert "[[M001], [M003]]" in prompt
        assert "SELECT merchant_id FROM merchant_info" in prompt
        assert "result 2: M001" in prompt

    def test_path_b_alone_reaches_reconciliation(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        """With path A's format error, path B is the sole real contributor."""
        fake_backends.reply("sql_generate", "SELECT 1")
        fake_backends.reply("data_query", "3 merchants")
        fake_backends.reply("final_result", "3 merchants")

        assert strategy.resolve("q") == "3 merchants"
        prompt = fake_backends.calls_to("final_result")[0]["question"]
        assert "path A failed: SQL format error" in prompt

    def test_reconciliation_failure_falls_back_to_path_b(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        fake_backends.reply("sql_generate", _ONLINE_SQL)
        fake_backends.reply("data_query", "M001")
        fake_backends.reply("final_result", httpx.Response(502))
        assert strategy.resolve("q") == "M001"

    def test_reconciliation_failure_falls_back_to_path_a(
        self, strategy: DataQueryStrategy, fake_backends: FakeBackends
    ) -> None:
        fake_backends.reply("sql_generate", _ONLINE_SQL)
        fake_backends.reply("data_query", httpx.Response(500))
        fake_backends.reply("final_result", httpx.Response(502))
        assert strategy.resolve("q") == "[[M001], [M003]]"

    def test_answer_uses_supplement(
        self,
        strategy: DataQueryStrategy,
        fake_backends: FakeBackends,
        make_question: Callable[..., Question],
    ) -> None:
        fake_backends.reply("sql_generate", _ONLINE_SQL)
        fake_backends.reply("data_query", "M001")
        fake_backends.reply("final_result", "OK")

        strategy.answer(make_question(text="online merchants?", supplement="type ONLINE"))

        sent = fake_backends.calls_to("data_query")[0]["question"]
        assert sent == "online merchants?\nsupplement: type ONLINE"
