"""
exam_server/tool_decision.py

Parsing of the tool command a backend produces.

Two envelopes are understood:

    fixed mode    {"toolName": "exchange-rate-tool", "fromCurrency": "USD", ...}
    dynamic mode  {"toolName": "exchange-rate-tool", "parameters": {"fromCurrency": "USD"}}

``{"toolName": "none", "message": "..."}`` means no tool is needed and the
message is the answer. Models like to wrap the JSON in prose, code fences or
comments, so :func:`extract_json` digs the last object out first.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Mapping
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Final

from .errors import ParameterError, UnsupportedToolError

logger = logging.getLogger("exam-server.tool-decision")

DEFAULT_NONE_MESSAGE: Final[str] = "not a tool question"


class ToolName(StrEnum):
    """Every tool a decision may name."""

    CREDIT_CARD = "credit-card-tool"
    EXCHANGE_RATE = "exchange-rate-tool"
    UTILITY_BILL = "utility-bill-tool"
    USER_ASSET = "user-asset-tool"
    PAYMENT_ORDER = "payment-order-tool"
    CURRENT_DATE = "current-date-tool"
    CALCULATOR = "calculator-tool"
    DATA_QUERY = "data-query-tool"
    KNOWLEDGE_QA = "knowledge-qa-tool"
    NONE = "none"


REMOTE_TOOLS: Final[frozenset[ToolName]] = frozenset(
    {
        ToolName.CREDIT_CARD,
        ToolName.EXCHANGE_RATE,
        ToolName.UTILITY_BILL,
        ToolName.USER_ASSET,
        ToolName.PAYMENT_ORDER,
    }
)


@dataclasses.dataclass(frozen=True, slots=True)
class ToolDecision:
    """A parsed tool command.

    Attributes:
        tool: Selected tool; ``ToolName.NONE`` when no tool is needed.
        parameters: Tool arguments with ``toolName`` removed.
        message: Direct answer carried by a ``none`` decision.
    """

    tool: ToolName
    parameters: Mapping[str, Any] = dataclasses.field(
        default_factory=lambda: MappingProxyType({})
    )
    message: str = ""

    @property
    def is_none(self) -> bool:
        return self.tool is ToolName.NONE


def extract_json(raw: str) -> str:
    """Return the last top-level ``{...}`` fragment in ``raw``.

    ``//`` and ``/* */`` comments outside quoted strings are dropped. Braces
    and comment markers inside quoted strings are kept as text. A ``//``
    right after ``:`` is kept so URLs in prose survive.

    Raises:
        ParameterError: No complete object is present.
    """
    kept: list[str] = []
    last: tuple[int, int] | None = None
    depth = 0
    start = -1
    quote: str | None = None
    escaped = False
    index = 0
    while index < len(raw):
        char = raw[index]
        if quote:
            kept.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            index += 1
            continue
        if raw.startswith("/*", index):
            end = raw.find("*/", index + 2)
            index = len(raw) if end == -1 else end + 2
            continue
        if raw.startswith("//", index) and (index == 0 or raw[index - 1] != ":"):
            end = raw.find("\n", index)
            index = len(raw) if end == -1 else end
            continue
        position = len(kept)
        kept.append(char)
        index += 1
        if char in "\"'" and depth > 0:
            quote = char
        elif char == "{":
            if depth == 0:
                start = position
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                last = (start, position + 1)
    if last is None:
        raise ParameterError("invalid tool decision JSON (no object found)")
    return "".join(kept[last[0] : last[1]])


def load_json_object(raw: str) -> dict[str, Any]:
    """Parse the command JSON, retrying with single quotes normalised."""
    fragment = extract_json(raw)
    for candidate in (fragment, fragment.replace("'", '"')):
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    logger.warning("[tool-decision] unparseable command: %r", raw[:300])
    raise ParameterError("invalid tool decision JSON")


def parse_tool_decision(raw: str, *, nested: bool) -> ToolDecision:
    """Turn backend output into a :class:`ToolDecision`.

    Args:
        raw: Backend answer text.
        nested: ``True`` for the dynamic envelope (arguments under
            ``parameters``), ``False`` for the flat fixed-mode envelope.

    Raises:
        ParameterError: Bad JSON, missing ``toolName`` or a non-object
            ``parameters`` field.
        UnsupportedToolError: ``toolName`` is not a known tool.
    """
    payload = load_json_object(raw)
    name = payload.get("toolName")
    if not isinstance(name, str) or not name.strip():
        raise ParameterError("missing toolName field")
    try:
        tool = ToolName(name.strip())
    except ValueError as exc:
        raise UnsupportedToolError(name.strip()) from exc

    if tool is ToolName.NONE:
        message = payload.get("message")
        return ToolDecision(
            tool=tool,
            message=str(message) if message else DEFAULT_NONE_MESSAGE,
        )

    if nested:
        params = payload.get("parameters") or {}
        if not isinstance(params, dict):
            raise ParameterError("parameters must be an object")
    else:
        params = {key: value for key, value in payload.items() if key != "toolName"}

    decision = ToolDecision(tool=tool, parameters=MappingProxyType(dict(params)))
    logger.info("[tool-decision] %s params=%s", decision.tool, dict(decision.parameters))
    return decision
