"""
exam_server/tool_gateway.py

Read-only gateway to the partner tool API.

A tool id (``credit-card-tool``, ``exchange-rate-tool`` ...) maps to a fixed
endpoint path through an immutable registry injected at start-up. Parameters
travel as query-string values on a GET carrying the ``X-App-Id`` /
``X-App-Key`` headers. The JSON reply is rendered into a short summary by
sniffing which well-known fields it contains.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from .errors import (
    AuthError,
    CallTimeoutError,
    ParameterError,
    UnsupportedToolError,
    UpstreamError,
)

logger = logging.getLogger("exam-server.tool-gateway")

# Substrings that mark a 4xx as a credential problem rather than bad parameters.
_AUTH_MARKERS: tuple[str, ...] = (
    "auth",
    "credential",
    "app-id",
    "app-key",
    "appid",
    "appkey",
    "unauthorized",
    "forbidden",
    "鉴权",
)

_USAGE_UNITS: dict[str, str] = {
    "electricity": "kWh",
    "water": "m³",
    "gas": "m³",
}


class ToolGateway:
    """Calls partner API tools by name.

    Args:
        base_url: Partner API base address.
        app_id: ``X-App-Id`` header value.
        app_key: ``X-App-Key`` header value.
        endpoints: Read-only tool id → path registry.
        http: Optional ``httpx.Client`` (tests inject a mock transport).
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        app_id: str,
        app_key: str,
        endpoints: Mapping[str, str],
        http: httpx.Client | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"X-App-Id": app_id, "X-App-Key": app_key}
        self._endpoints = endpoints
        self._http = http or httpx.Client()
        self._timeout = timeout

    def close(self) -> None:
        self._http.close()

    def supports(self, tool_name: str) -> bool:
        return tool_name in self._endpoints

    @property
    def tool_names(self) -> list[str]:
        return list(self._endpoints)

    def invoke(self, tool_name: str, parameters: Mapping[str, Any] | None) -> str:
        """Call ``tool_name`` with ``parameters`` and summarise the response.

        Raises:
            UnsupportedToolError: ``tool_name`` is not in the registry.
            ParameterError: No parameters left after dropping ``toolName``, or
                the API rejected them (4xx without a credential hint).
            AuthError: The API rejected our credentials.
            CallTimeoutError: The request timed out.
            UpstreamError: Any other HTTP or transport failure.
        """
        path = self._endpoints.get(tool_name)
        if path is None:
            raise UnsupportedToolError(tool_name)

        params = {
            key: _query_value(value)
            for key, value in (parameters or {}).items()
            if key != "toolName" and value is not None
        }
        if not params:
            raise ParameterError("tool parameters are empty")

        url = f"{self._base_url}{path}"
        logger.info("[tool-gateway] GET %s params=%s", url, params)
        try:
            response = self._http.get(
                url, params=params, headers=self._headers, timeout=self._timeout
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as exc:
            logger.warning("[tool-gateway] %s timed out: %s", tool_name, exc)
            raise CallTimeoutError(str(exc) or tool_name) from exc
        except httpx.HTTPStatusError as exc:
            raise _classify_status_error(tool_name, exc) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("[tool-gateway] %s failed: %s", tool_name, exc, exc_info=True)
            raise UpstreamError(str(exc)) from exc

        if not isinstance(body, dict):
            raise UpstreamError(f"unexpected response type {type(body).__name__}")
        summary = format_tool_response(body)
        logger.info("[tool-gateway] %s -> %s", tool_name, summary)
        return summary


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _classify_status_error(tool_name: str, exc: httpx.HTTPStatusError) -> Exception:
    status = exc.response.status_code
    message = exc.response.text.lower()
    logger.error("[tool-gateway] %s HTTP %d: %s", tool_name, status, exc.response.text[:300])
    if 400 <= status < 500:
        if status in (401, 403) or any(marker in message for marker in _AUTH_MARKERS):
            return AuthError(f"HTTP {status}")
        return ParameterError(f"HTTP {status}")
    return UpstreamError(f"HTTP {status}")


# ---------------------------------------------------------------------------
# Response rendering
# ---------------------------------------------------------------------------


def _money(value: Any) -> str:
    try:
        return f"{float(value):.2f}"
    except (TypeError, ValueError):
        return str(value)


def format_tool_response(response: Mapping[str, Any]) -> str:
    """Render a partner API response as a one-line summary.

    The tool is recognised from its fields: ``card_number`` (credit-card
    bill), ``from_currency`` (exchange rate), ``utility_type`` (utility bill),
    ``cards`` / ``households`` (user assets), ``payment_order_id`` (payment
    order). Anything else is dumped as ``key=value`` pairs.
    """
    if "card_number" in response:
        return (
            f"credit card bill ({response.get('bill_month')}): "
            f"card={response.get('card_number')}, "
            f"total={_money(response.get('total_amount'))} {response.get('currency')}, "
            f"status={response.get('payment_status')}, "
            f"due={response.get('due_date')}"
        )
    if "from_currency" in response:
        return (
            f"exchange: {_money(response.get('amount'))} {response.get('from_currency')} = "
            f"{_money(response.get('converted_amount'))} {response.get('to_currency')} "
            f"(rate {response.get('rate')}), updated {response.get('timestamp')}"
        )
    if "utility_type" in response:
        utility_type = str(response.get("utility_type"))
        unit = response.get("usage_unit") or _USAGE_UNITS.get(utility_type, "")
        return (
            f"utility bill ({response.get('bill_month')}-{utility_type}): "
            f"household={response.get('household_id')}, "
            f"usage={_money(response.get('usage_amount'))} {unit}, "
            f"amount={_money(response.get('bill_amount'))} {response.get('currency')}, "
            f"status={response.get('payment_status')}"
        )
    if "cards" in response or "households" in response:
        kind, items = (
            ("credit card", response.get("cards"))
            if "cards" in response
            else ("property", response.get("households"))
        )
        count = len(items) if isinstance(items, list) else 0
        return (
            f"user assets ({kind}): customer={response.get('customer_id')}, "
            f"{count} {kind} asset(s)"
        )
    if "payment_order_id" in response:
        return (
            f"payment order created: id={response.get('payment_order_id')}, "
            f"merchant={response.get('merchant_id')}, "
            f"amount={_money(response.get('amount'))} {response.get('currency') or 'CNY'}, "
            f"status={response.get('payment_status')}, "
            f"expires={response.get('expire_time')}"
        )
    dump = ", ".join(f"{key}={value}" for key, value in response.items())
    return f"tool response: {{{dump}}}"
