"""
exam_server/orchestrator.py

Top-level answer resolution.

Flow per question:

    paper in hard_papers ─────────────────────────► ToolStrategy.dynamic
    otherwise → IntentClassifier.classify
                  knowledge_qa → KnowledgeStrategy
                  tool_call    → ToolStrategy.fixed
                  data_query   → DataQueryStrategy

Strategies degrade to fixed literals on their own; anything that still
escapes is caught here and turned into ``"system busy, try again: <cause>"``.
The returned :class:`~exam_server.models.Answer` always echoes the question's
segment, paper and id.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor

import httpx
from sqlalchemy.engine import Engine

from .backend_client import BackendClient
from .choice import ChoiceMatcher
from .data_query import DataQueryStrategy
from .errors import SYSTEM_BUSY
from .intent import Intent, IntentClassifier
from .knowledge import KnowledgeStrategy
from .models import Answer, Question
from .query_executor import QueryExecutor
from .settings import ExamSettings, get_settings
from .tool_gateway import ToolGateway
from .tool_strategy import ToolStrategy

logger = logging.getLogger("exam-server.orchestrator")


class ExamOrchestrator:
    """Routes each question to a strategy and always produces an answer.

    Args:
        classifier: Intent classifier.
        knowledge: Knowledge strategy.
        tools: Tool strategy (fixed and dynamic modes).
        data_query: Data-query strategy.
        hard_papers: Paper tags answered through dynamic tool selection.
        on_close: Callbacks releasing shared resources on :meth:`close`.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        knowledge: KnowledgeStrategy,
        tools: ToolStrategy,
        data_query: DataQueryStrategy,
        hard_papers: Iterable[str] = (),
        on_close: Iterable[Callable[[], None]] = (),
    ) -> None:
        self._classifier = classifier
        self._knowledge = knowledge
        self._tools = tools
        self._data_query = data_query
        self._hard_papers = frozenset(paper.strip().upper() for paper in hard_papers)
        self._on_close = list(on_close)
        self._routes: dict[Intent, Callable[[Question], str]] = {
            Intent.KNOWLEDGE_QA: knowledge.answer,
            Intent.TOOL_CALL: tools.fixed,
            Intent.DATA_QUERY: data_query.answer,
        }

    def answer(self, question: Question) -> Answer:
        """Resolve ``question``. Never raises."""
        logger.info(
            "[orchestrator] question %s/%s/%s category=%r: %r",
            question.segment,
            question.paper,
            question.id,
            question.category,
            question.text[:120],
        )
        try:
            text = self._resolve(question)
        except Exception as exc:
            logger.error("[orchestrator] question %s failed: %s", question.id, exc, exc_info=True)
            text = f"{SYSTEM_BUSY}: {exc}"
        answer = Answer.for_question(question, text)
        logger.info("[orchestrator] question %s answer=%r", question.id, answer.answer[:200])
        return answer

    def _resolve(self, question: Question) -> str:
        if question.paper.strip().upper() in self._hard_papers:
            logger.info("[orchestrator] paper %s uses dynamic tool selection", question.paper)
            return self._tools.dynamic(question)
        intent = self._classifier.classify(question.text)
        return self._routes[intent](question)

    def close(self) -> None:
        for callback in self._on_close:
            callback()


def build_orchestrator(
    settings: ExamSettings | None = None,
    *,
    http: httpx.Client | None = None,
    engine: Engine | None = None,
) -> ExamOrchestrator:
    """Wire an :class:`ExamOrchestrator` from settings.

    Args:
        settings: Configuration; defaults to :func:`get_settings`.
        http: Optional shared ``httpx.Client`` for backends and the partner API.
        engine: Optional SQLAlchemy engine; defaults to one built from
            ``settings.database_url``.
    """
    cfg = settings or get_settings()
    client = BackendClient(http)
    gateway = ToolGateway(
        cfg.partner_api_base_url,
        cfg.partner_app_id,
        cfg.partner_app_key,
        cfg.endpoint_registry(),
        http=http,
        timeout=cfg.partner_timeout_seconds,
    )
    executor = QueryExecutor(engine) if engine is not None else QueryExecutor.from_url(cfg.database_url)
    pool = ThreadPoolExecutor(max_workers=cfg.worker_pool_size, thread_name_prefix="data-query")

    choice_matcher = ChoiceMatcher(client, cfg.choice_match)
    knowledge = KnowledgeStrategy(client, cfg.knowledge, choice_matcher)
    data_query = DataQueryStrategy(
        client,
        cfg.sql_generate,
        cfg.data_query,
        cfg.final_result,
        executor,
        pool,
        timeout=cfg.dual_path_timeout_seconds,
        sentinel=cfg.agree_sentinel,
    )
    tools = ToolStrategy(
        client,
        cfg.tool_decision,
        cfg.tool_result,
        gateway,
        choice_matcher,
        knowledge,
        data_query,
        timezone=cfg.timezone,
    )
    return ExamOrchestrator(
        IntentClassifier(client, cfg.classify),
        knowledge,
        tools,
        data_query,
        hard_papers=cfg.hard_papers,
        on_close=(
            lambda: pool.shutdown(wait=False, cancel_futures=True),
            executor.dispose,
            gateway.close,
            client.close,
        ),
    )


def run() -> None:
    """Interactive REPL entry point (``exam-repl``)."""
    from dotenv import load_dotenv
    from rich.console import Console
    from rich.panel import Panel
    from rich.prompt import Prompt

    from .log_context import configure_logging

    load_dotenv()
    settings = get_settings()
    configure_logging(settings.log_level)
    orchestrator = build_orchestrator(settings)

    console = Console()
    console.print(
        Panel(
            "[bold cyan]Exam Server[/bold cyan]\n"
            "[dim]Ask a question; type 'exit' to quit[/dim]",
            border_style="cyan",
        )
    )

    question_id = 0
    try:
        while True:
            user_input = Prompt.ask("[bold green]Question[/bold green]").strip()
            if user_input.lower() in {"exit", "quit", "q"}:
                console.print("[dim]Goodbye.[/dim]")
                break
            if not user_input:
                continue
            question_id += 1
            answer = orchestrator.answer(
                Question(
                    segment="prelim",
                    paper="TEST",
                    id=question_id,
                    category="open-ended",
                    text=user_input,
                )
            )
            console.print(Panel(answer.answer, title=f"#{question_id}", border_style="green"))
    finally:
        orchestrator.close()


if __name__ == "__main__":
    run()
