"""Paddle Billing webhook verification and event normalization."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from fluentdesk.schemas.billing import PaymentEvent, PaymentEventType, Plan

logger = logging.getLogger(__name__)

PROVIDER = "paddle"

EVENT_TYPE_MAP: dict[str, PaymentEventType] = {
    "transaction.completed": PaymentEventType.PAYMENT_COMPLETED,
    "transaction.payment_failed": PaymentEventType.PAYMENT_FAILED,
    "subscription.created": PaymentEventType.SUBSCRIPTION_CREATED,
    "subscription.updated": PaymentEventType.SUBSCRIPTION_UPDATED,
    "subscription.canceled": PaymentEventType.SUBSCRIPTION_CANCELED,
}

# Paddle transaction totals are strings in the currency's minor unit.
_ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW"}


class WebhookSignatureError(ValueError):
    pass


def _parse_signature_header(header: str) -> tuple[str, list[str]]:
    timestamp = ""
    signatures: list[str] = []
    for part in header.split(";"):
        key, _, value = part.strip().partition("=")
        if key == "ts":
            timestamp = value
        elif key == "h1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_paddle_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> dict[str, Any]:
    """Check ``Paddle-Signature`` (``ts=..;h1=..``) and return the parsed body."""
    if not secret:
        raise RuntimeError("Paddle webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing Paddle-Signature header")

    timestamp, signatures = _parse_signature_header(header)
    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed Paddle-Signature header")
    try:
        signed_at = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Malformed Paddle-Signature timestamp") from None
    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - signed_at) > tolerance_seconds:
        raise WebhookSignatureError("Paddle-Signature timestamp outside tolerance")

    signed_payload = timestamp.encode() + b":" + payload
    expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Invalid Paddle signature")

    try:
        body = json.loads(payload)
    except ValueError:
        raise WebhookSignatureError("Webhook body is not valid JSON") from None
    if not isinstance(body, dict):
        raise WebhookSignatureError("Webhook body is not a JSON object")
    return body


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _parse_plan(value: Any) -> Plan | None:
    try:
        return Plan(str(value).strip().lower())
    except ValueError:
        return None


def _parse_percentage(value: Any) -> int | None:
    try:
        percent = int(value)
    except (TypeError, ValueError):
        return None
    return percent if 0 <= percent <= 100 else None


def _parse_amount(totals: dict[str, Any], currency: str | None) -> Decimal | None:
    raw = totals.get("grand_total") or totals.get("total")
    if raw is None:
        return None
    try:
        amount = Decimal(str(raw))
    except InvalidOperation:
        return None
    if (currency or "").upper() in _ZERO_DECIMAL_CURRENCIES:
        return amount
    return amount / Decimal(100)


def parse_paddle_event(body: dict[str, Any]) -> PaymentEvent | None:
    """Normalize a verified Paddle notification; None for event types we skip."""
    provider_event_type = str(body.get("event_type") or "")
    event_type = EVENT_TYPE_MAP.get(provider_event_type)
    if event_type is None:
        return None

    data = body.get("data") or {}
    custom_data = data.get("custom_data") or {}
    is_transaction = provider_event_type.startswith("transaction.")
    currency = data.get("currency_code")
    totals = (data.get("details") or {}).get("totals") or {}

    return PaymentEvent(
        provider=PROVIDER,
        event_id=str(body.get("event_id") or body.get("notification_id") or ""),
        event_type=event_type,
        provider_event_type=provider_event_type,
        occurred_at=_parse_datetime(body.get("occurred_at")) or datetime.now(UTC),
        user_id=custom_data.get("userId") or None,
        plan=_parse_plan(custom_data.get("plan")),
        customer_id=data.get("customer_id"),
        subscription_id=data.get("subscription_id") if is_transaction else data.get("id"),
        transaction_id=data.get("id") if is_transaction else None,
        amount_total=_parse_amount(totals, currency) if is_transaction else None,
        currency=currency,
        provider_status=None if is_transaction else data.get("status"),
        discount_percentage=_parse_percentage(custom_data.get("discountPercentage")),
        promo_code=custom_data.get("promoCode") or None,
        receipt_url=None,
    )
