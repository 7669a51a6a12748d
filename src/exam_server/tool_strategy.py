"""
exam_server/tool_strategy.py

Tool-call resolution.

Fixed mode
    The tool-decision backend gets a static rulebook plus the question and
    answers with a flat ``{"toolName": ..., <params>}`` command.

Dynamic mode
    The same backend gets a catalogue of every tool (partner API, local,
    data-query and knowledge-qa) and answers with
    ``{"toolName": ..., "parameters": {...}}``. Data-query and knowledge-qa
    decisions hand the question to those strategies.

In both modes ``toolName == "none"`` makes the embedded message the answer.
Tool output is optionally rewritten by the tool-result backend and, for
multiple-choice questions, mapped to an option letter.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Final

from .backend_client import BackendClient
from .choice import ChoiceMatcher
from .data_query import DataQueryStrategy
from .errors import BackendCallError, ExamError, InternalError, ParameterError
from .knowledge import KnowledgeStrategy
from .local_tools import current_date, evaluate_expression
from .models import Question
from .settings import BackendSettings
from .tool_decision import REMOTE_TOOLS, ToolDecision, ToolName, parse_tool_decision
from .tool_gateway import ToolGateway

logger = logging.getLogger("exam-server.tools")

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

# (tool, description, parameters) in catalogue order.
_TOOL_CATALOGUE: Final[tuple[tuple[ToolName, str, str], ...]] = (
    (
        ToolName.CREDIT_CARD,
        "monthly credit card bill",
        "cardNumber (required), month yyyy-MM (required)",
    ),
    (
        ToolName.EXCHANGE_RATE,
        "currency exchange rate and conversion",
        "fromCurrency (required), toCurrency (required), amount (optional, default 1)",
    ),
    (
        ToolName.UTILITY_BILL,
        "monthly electricity / water / gas bill",
        "householdId (required), month yyyy-MM (required), "
        "utilityType electricity|water|gas (optional, default electricity)",
    ),
    (
        ToolName.USER_ASSET,
        "credit cards or properties owned by a customer",
        "customerId (required), assetType card|household (optional, default card)",
    ),
    (
        ToolName.PAYMENT_ORDER,
        "create a QR payment order",
        "merchantId (required), orderId (required), amount (optional)",
    ),
    (ToolName.CURRENT_DATE, "today's date", "none"),
    (
        ToolName.CALCULATOR,
        "arithmetic with + - * / ^ sqrt() and parentheses",
        "expression (required)",
    ),
    (
        ToolName.DATA_QUERY,
        "questions answered from the business database (merchants, orders, "
        "transactions, statistics)",
        "none",
    ),
    (ToolName.KNOWLEDGE_QA, "general or domain knowledge questions", "none"),
)

_FIXED_TOOLS: Final[frozenset[ToolName]] = frozenset(REMOTE_TOOLS) | {
    ToolName.CURRENT_DATE,
    ToolName.CALCULATOR,
}


def _catalogue_lines(tools: frozenset[ToolName] | None = None) -> str:
    return "\n".join(
        f"- {tool}: {description}. Parameters: {params}"
        for tool, description, params in _TOOL_CATALOGUE
        if tools is None or tool in tools
    )


def build_fixed_prompt(question_text: str) -> str:
    """Static tool-calling rulebook followed by the question."""
    return (
        "You translate a user request into exactly one tool command.\n"
        "Available tools:\n"
        f"{_catalogue_lines(_FIXED_TOOLS)}\n"
        "Rules:\n"
        '1. Output a single JSON object: {"toolName": "<tool>", <parameter>: <value>, ...}.\n'
        "2. Use the parameter names exactly as listed; no comments, no extra text.\n"
        '3. If no tool applies, output {"toolName": "none", "message": "<direct answer>"}.\n'
        "\n"
        f"User question: {question_text}"
    )


def build_dynamic_prompt(question_text: str) -> str:
    """Full tool catalogue followed by the question."""
    return (
        "Choose the single best tool for the user question.\n"
        "Available tools:\n"
        f"{_catalogue_lines()}\n"
        "Answer with one JSON object only:\n"
        '{"toolName": "<tool>", "parameters": {<parameter>: <value>, ...}}\n'
        'If no tool is needed: {"toolName": "none", "message": "<direct answer>"}\n'
        "\n"
        f"User question: {question_text}"
    )


def build_integration_prompt(question_text: str, tool_result: str) -> str:
    return (
        f"user question: {question_text}\n"
        f"tool result: {tool_result}\n"
        "Answer the user question using only the tool result."
    )


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------


class ToolStrategy:
    """Resolves tool-call questions in fixed or dynamic mode.

    Args:
        client: Shared backend client.
        decision_backend: Backend producing tool commands.
        result_backend: Optional backend rewriting raw tool output; skipped
            when not configured.
        gateway: Partner API gateway.
        choice_matcher: Used for multiple-choice questions.
        knowledge: Target of ``knowledge-qa-tool`` decisions.
        data_query: Target of ``data-query-tool`` decisions.
        timezone: Zone reported by the current-date tool.
    """

    def __init__(
        self,
        client: BackendClient,
        decision_backend: BackendSettings,
        result_backend: BackendSettings,
        gateway: ToolGateway,
        choice_matcher: ChoiceMatcher,
        knowledge: KnowledgeStrategy,
        data_query: DataQueryStrategy,
        timezone: str = "Asia/Shanghai",
    ) -> None:
        self._client = client
        self._decision_backend = decision_backend
        self._result_backend = result_backend
        self._gateway = gateway
        self._choice_matcher = choice_matcher
        self._knowledge = knowledge
        self._data_query = data_query
        self._timezone = timezone
        self._dispatch: dict[ToolName, Callable[[ToolDecision, Question], str]] = {
            ToolName.CURRENT_DATE: self._run_current_date,
            ToolName.CALCULATOR: self._run_calculator,
            ToolName.DATA_QUERY: self._run_data_query,
            ToolName.KNOWLEDGE_QA: self._run_knowledge,
            **{tool: self._run_remote for tool in REMOTE_TOOLS},
        }

    def fixed(self, question: Question) -> str:
        """Answer ``question`` using the fixed rulebook prompt."""
        return self._resolve(question, build_fixed_prompt(question.full_text), nested=False)

    def dynamic(self, question: Question) -> str:
        """Answer ``question`` by letting the backend pick from every tool."""
        return self._resolve(question, build_dynamic_prompt(question.full_text), nested=True)

    def _resolve(self, question: Question, prompt: str, *, nested: bool) -> str:
        mode = "dynamic" if nested else "fixed"
        try:
            raw = self._client.call_backend("tool_decision", self._decision_backend, prompt)
        except BackendCallError as exc:
            logger.warning("[tools] %s decision failed: %s", mode, exc.cause)
            return InternalError(str(exc)).user_message()
        logger.info("[tools] question %s %s command: %r", question.id, mode, raw[:300])

        try:
            decision = parse_tool_decision(raw, nested=nested)
        except ParameterError as exc:
            return exc.user_message()

        if decision.is_none:
            return decision.message

        try:
            result = self.execute(decision, question)
        except ExamError as exc:
            logger.warning("[tools] %s failed: %s", decision.tool, exc)
            return exc.user_message()

        if decision.tool in (ToolName.DATA_QUERY, ToolName.KNOWLEDGE_QA):
            return result
        return self._finish(question, result)

    def execute(self, decision: ToolDecision, question: Question) -> str:
        """Run the tool named by ``decision`` and return its raw result.

        Raises:
            ExamError: The tool rejected the call or failed.
        """
        handler = self._dispatch.get(decision.tool)
        if handler is None:
            raise ParameterError(f"no executor for {decision.tool}")
        result = handler(decision, question)
        logger.info("[tools] %s -> %r", decision.tool, result[:300])
        return result

    def _run_current_date(self, decision: ToolDecision, question: Question) -> str:
        return f"current date ({self._timezone}): {current_date(self._timezone)}"

    def _run_calculator(self, decision: ToolDecision, question: Question) -> str:
        expression = decision.parameters.get("expression")
        if expression is not None and not isinstance(expression, str):
            expression = str(expression)
        return f"calculation result: {evaluate_expression(expression)}"

    def _run_remote(self, decision: ToolDecision, question: Question) -> str:
        return self._gateway.invoke(decision.tool, decision.parameters)

    def _run_data_query(self, decision: ToolDecision, question: Question) -> str:
        return self._data_query.answer(question)

    def _run_knowledge(self, decision: ToolDecision, question: Question) -> str:
        return self._knowledge.answer(question)

    def _finish(self, question: Question, tool_result: str) -> str:
        result = self._integrate(question, tool_result)
        if question.is_multiple_choice:
            return self._choice_matcher.match(question, result)
        return result

    def _integrate(self, question: Question, tool_result: str) -> str:
        if not self._result_backend.configured:
            return tool_result
        try:
            return self._client.call_backend(
                "tool_result",
                self._result_backend,
                build_integration_prompt(question.full_text, tool_result),
            )
        except BackendCallError as exc:
            logger.warning("[tools] integration failed, keeping raw result: %s", exc.cause)
            return tool_result
