"""
exam_server/local_tools.py

Deterministic tools that run in-process: current date and a calculator.

The orchestrator calls :func:`current_date` and :func:`calculate` directly.
The same two functions are also registered on a FastMCP server so they can be
exposed to MCP clients (``exam-tools-mcp``).
"""

from __future__ import annotations

import ast
import logging
import math
import operator as op
from datetime import datetime
from typing import Final
from zoneinfo import ZoneInfo

from fastmcp import FastMCP
from simpleeval import InvalidExpression, SimpleEval, safe_power

from .errors import ParameterError

logger = logging.getLogger("exam-server.local-tools")

CURRENT_DATE_TOOL: Final[str] = "current-date-tool"
CALCULATOR_TOOL: Final[str] = "calculator-tool"

DEFAULT_TIMEZONE: Final[str] = "Asia/Shanghai"

_FUNCTIONS = {"sqrt": math.sqrt}

# Arithmetic operators only.
_OPERATORS = {
    ast.Add: op.add,
    ast.Sub: op.sub,
    ast.Mult: op.mul,
    ast.Div: op.truediv,
    ast.Pow: safe_power,
    ast.USub: op.neg,
    ast.UAdd: op.pos,
}


def current_date(timezone: str = DEFAULT_TIMEZONE) -> str:
    """Return today's date in ``timezone`` as ``YYYY-MM-DD``."""
    return datetime.now(ZoneInfo(timezone)).date().isoformat()


def evaluate_expression(expression: str | None) -> str:
    """Evaluate an arithmetic expression.

    Supports ``+ - * / ^``, parentheses and ``sqrt(...)``. Names, attribute
    access, strings and every other construct are rejected.

    Args:
        expression: Expression text, e.g. ``"2+3*4"`` or ``"sqrt(16)"``.

    Returns:
        The result; integral values are rendered without a fractional part.

    Raises:
        ParameterError: Empty input, bad syntax, undefined identifiers or a
            non-numeric / non-finite result.
    """
    if expression is None or not expression.strip():
        raise ParameterError("calculation expression must not be empty")

    normalised = expression.strip().replace("^", "**")
    evaluator = SimpleEval(operators=_OPERATORS, names={}, functions=_FUNCTIONS)
    try:
        value = evaluator.eval(normalised)
    except (InvalidExpression, SyntaxError) as exc:
        raise ParameterError(f"invalid expression ({exc})") from exc
    except (KeyError, ZeroDivisionError, ValueError, TypeError, OverflowError) as exc:
        raise ParameterError(f"invalid expression ({exc})") from exc

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParameterError(f"invalid expression (non-numeric result {value!r})")
    if isinstance(value, float) and not math.isfinite(value):
        raise ParameterError("invalid expression (result is not finite)")
    return _format_number(value)


def calculate(expression: str | None) -> str:
    """Calculator tool: like :func:`evaluate_expression` but never raises.

    Returns:
        The formatted result, or the parameter-error literal with the reason.
    """
    try:
        return evaluate_expression(expression)
    except ParameterError as exc:
        logger.warning("[calculator] %s: %r", exc, expression)
        return exc.user_message()


def _format_number(value: int | float) -> str:
    if isinstance(value, int):
        return str(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


# ---------------------------------------------------------------------------
# MCP exposure
# ---------------------------------------------------------------------------

mcp: FastMCP = FastMCP(
    "exam-server-local-tools",
    instructions="Current date (Asia/Shanghai) and an arithmetic calculator.",
)
mcp.tool(name=CURRENT_DATE_TOOL)(current_date)
mcp.tool(name=CALCULATOR_TOOL)(calculate)


def run_mcp() -> None:
    """Serve the local tools over MCP (stdio)."""
    mcp.run()


if __name__ == "__main__":
    run_mcp()
