"""
exam_server/mock_partner.py

Stand-in for the partner tool API, for local runs and end-to-end tests.

Mounted under ``/mock`` so that ``PARTNER_API_BASE_URL=http://<host>:<port>/mock``
lines up with the default tool registry. Responses reproduce the partner
field names with fixed sample values. When ``partner_app_id`` is configured
the ``X-App-Id`` / ``X-App-Key`` headers must match it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from .settings import get_settings

logger = logging.getLogger("exam-server.mock")

_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _mask(value: str) -> str:
    if len(value) <= 8:
        return value
    return f"{value[:4]}****{value[-4:]}"


def verify_partner_auth(
    x_app_id: str | None = Header(None),
    x_app_key: str | None = Header(None),
) -> None:
    settings = get_settings()
    if not settings.partner_app_id:
        return
    if x_app_id != settings.partner_app_id or x_app_key != settings.partner_app_key:
        logger.warning("[mock] rejected credentials app_id=%r", x_app_id)
        raise HTTPException(
            status_code=401,
            detail="authentication failed: invalid X-App-Id or X-App-Key",
        )


router = APIRouter(
    prefix="/mock/api",
    tags=["mock-partner"],
    dependencies=[Depends(verify_partner_auth)],
)


@router.get("/credit-card/monthly-bill")
def credit_card_bill(
    card_number: str = Query(..., alias="cardNumber"),
    month: str = Query(..., pattern=r"^\d{4}-\d{2}$"),
) -> dict[str, Any]:
    logger.info("[mock] credit card bill card=%s month=%s", _mask(card_number), month)
    return {
        "card_number": _mask(card_number),
        "cardholder_name": "Zhang San",
        "bank": "Bank of China",
        "bill_month": month,
        "total_amount": 15680.50,
        "minimum_payment": 1568.05,
        "payment_status": "unpaid",
        "due_date": date(2025, 10, 15).isoformat(),
        "currency": "CNY",
    }


@router.get("/exchange-rate")
def exchange_rate(
    from_currency: str = Query(..., alias="fromCurrency"),
    to_currency: str = Query(..., alias="toCurrency"),
    amount: Decimal = Query(Decimal("1")),
) -> dict[str, Any]:
    rate = Decimal("7.25")
    converted = (amount * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return {
        "from_currency": from_currency,
        "to_currency": to_currency,
        "rate": float(rate),
        "amount": float(amount),
        "converted_amount": float(converted),
        "timestamp": datetime.now().strftime(_DATETIME_FORMAT),
    }


# utility type -> (unit, usage, bill amount)
_UTILITY_SAMPLES: dict[str, tuple[str, float, float]] = {
    "electricity": ("kWh", 286.8, 206.8),
    "water": ("m³", 15.8, 63.2),
    "gas": ("m³", 28.5, 114.0),
}


@router.get("/utility-bill/monthly-bill")
def utility_bill(
    household_id: str = Query(..., alias="householdId"),
    month: str = Query(..., pattern=r"^\d{4}-\d{2}$"),
    utility_type: str = Query("electricity", alias="utilityType"),
) -> dict[str, Any]:
    unit, usage, bill = _UTILITY_SAMPLES.get(utility_type, _UTILITY_SAMPLES["electricity"])
    return {
        "household_id": household_id,
        "customer_name": "Zhang San",
        "address": "1 Jianguomenwai Avenue, Chaoyang District, Beijing",
        "utility_type": utility_type,
        "bill_month": month,
        "usage_amount": usage,
        "usage_unit": unit,
        "bill_amount": bill,
        "payment_status": "unpaid",
        "currency": "CNY",
    }


@router.get("/user/assets")
def user_assets(
    customer_id: str = Query(..., alias="customerId"),
    asset_type: str = Query("card", alias="assetType"),
) -> dict[str, Any]:
    if asset_type == "household":
        return {
            "customer_id": _mask(customer_id),
            "households": [
                {
                    "household_id": "HH-0001",
                    "address": "1 Jianguomenwai Avenue, Chaoyang District, Beijing",
                    "household_type": "apartment",
                    "area": 89.5,
                },
            ],
        }
    return {
        "customer_id": _mask(customer_id),
        "cards": [
            {
                "card_number": _mask("4111111111111111"),
                "bank": "Bank of China",
                "card_type": "UnionPay",
                "credit_limit": 50000.0,
            },
            {
                "card_number": _mask("5555111111112222"),
                "bank": "China Merchants Bank",
                "card_type": "Visa",
                "credit_limit": 30000.0,
            },
        ],
    }


@router.get("/qr/create-payment-order")
def create_payment_order(
    merchant_id: str = Query(..., alias="merchantId"),
    order_id: str = Query(..., alias="orderId"),
    amount: Decimal = Query(Decimal("0.00")),
) -> dict[str, Any]:
    now = datetime.now()
    return {
        "payment_order_id": f"PO_{int(now.timestamp() * 1000)}",
        "merchant_id": merchant_id,
        "order_id": order_id,
        "amount": float(amount),
        "payment_status": "PENDING",
        "expire_time": (now + timedelta(minutes=30)).strftime(_DATETIME_FORMAT),
        "timestamp": now.strftime(_DATETIME_FORMAT),
        "message": "Payment order created successfully",
    }
