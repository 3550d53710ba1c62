"""Stripe SDK wrapper: webhook verification, event parsing and checkout."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import stripe
from fluentdesk.schemas.billing import PaymentEvent, PaymentEventType, Plan, PriceQuote

from api.services.paddle_service import WebhookSignatureError

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

EVENT_TYPE_MAP: dict[str, PaymentEventType] = {
    "checkout.session.completed": PaymentEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.created": PaymentEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": PaymentEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": PaymentEventType.SUBSCRIPTION_CANCELED,
    "invoice.paid": PaymentEventType.PAYMENT_COMPLETED,
    "invoice.payment_failed": PaymentEventType.PAYMENT_FAILED,
}

_ZERO_DECIMAL_CURRENCIES = {"jpy", "krw", "vnd"}


def _get_stripe_client(secret_key: str):
    if not secret_key:
        raise RuntimeError("Stripe is not configured")
    stripe.api_key = secret_key
    return stripe


def verify_stripe_signature(payload: bytes, sig_header: str | None, webhook_secret: str) -> dict:
    """Verify the ``Stripe-Signature`` header and return the event as a dict."""
    if not webhook_secret:
        raise RuntimeError("Stripe webhook secret is not configured")
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError("Invalid Stripe signature") from exc
    except ValueError as exc:
        raise WebhookSignatureError("Webhook body is not valid JSON") from exc
    return json.loads(payload)


def _from_minor_units(value: Any, currency: str | None) -> Decimal | None:
    if value is None:
        return None
    amount = Decimal(int(value))
    if (currency or "").lower() in _ZERO_DECIMAL_CURRENCIES:
        return amount
    return amount / Decimal(100)


def _to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in _ZERO_DECIMAL_CURRENCIES:
        return int(amount)
    return int(amount * 100)


def _invoice_metadata(invoice: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    """Subscription metadata and id for an invoice across API versions."""
    details = invoice.get("subscription_details") or {}
    parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
    metadata = (
        invoice.get("metadata")
        or details.get("metadata")
        or parent_details.get("metadata")
        or {}
    )
    subscription_id = invoice.get("subscription") or parent_details.get("subscription")
    return metadata, subscription_id


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


def parse_stripe_event(body: dict[str, Any]) -> PaymentEvent | None:
    """Normalize a verified Stripe event; None for event types we skip."""
    provider_event_type = str(body.get("type") or "")
    event_type = EVENT_TYPE_MAP.get(provider_event_type)
    if event_type is None:
        return None

    obj = (body.get("data") or {}).get("object") or {}
    created = body.get("created")
    occurred_at = (
        datetime.fromtimestamp(int(created), UTC) if created else datetime.now(UTC)
    )
    currency = obj.get("currency")

    fields: dict[str, Any] = {
        "customer_id": obj.get("customer"),
        "currency": currency.upper() if currency else None,
    }
    if provider_event_type.startswith("invoice."):
        metadata, subscription_id = _invoice_metadata(obj)
        amount_key = "amount_paid" if event_type is PaymentEventType.PAYMENT_COMPLETED else "amount_due"
        fields.update(
            subscription_id=subscription_id,
            transaction_id=obj.get("id"),
            amount_total=_from_minor_units(obj.get(amount_key), currency),
            receipt_url=obj.get("hosted_invoice_url"),
        )
    elif provider_event_type == "checkout.session.completed":
        metadata = obj.get("metadata") or {}
        fields.update(subscription_id=obj.get("subscription"))
    else:
        metadata = obj.get("metadata") or {}
        fields.update(subscription_id=obj.get("id"), provider_status=obj.get("status"))

    return PaymentEvent(
        provider=PROVIDER,
        event_id=str(body.get("id") or ""),
        event_type=event_type,
        provider_event_type=provider_event_type,
        occurred_at=occurred_at,
        user_id=metadata.get("user_id") or None,
        plan=_parse_plan(metadata.get("plan")),
        discount_percentage=_parse_percentage(metadata.get("discount_percentage")),
        promo_code=metadata.get("promo_code") or None,
        **fields,
    )


def create_checkout_session(
    *,
    secret_key: str,
    user_id: str,
    email: str,
    quote: PriceQuote,
    price_id: str,
    interval_months: int,
    promo_code: str | None,
    success_url: str,
    cancel_url: str,
) -> str:
    """Create a Stripe Checkout session for ``quote`` and return its URL.

    A configured price is used only when no discount applies; discounted
    checkouts carry the final amount inline.
    """
    stripe_client = _get_stripe_client(secret_key)
    metadata = {
        "user_id": user_id,
        "plan": quote.plan.value,
        "discount_percentage": str(quote.discount_percentage),
    }
    if promo_code and quote.discount_percentage:
        metadata["promo_code"] = promo_code

    if price_id and not quote.discount_percentage:
        line_item: dict[str, Any] = {"price": price_id, "quantity": 1}
    else:
        line_item = {
            "price_data": {
                "currency": quote.currency.lower(),
                "unit_amount": _to_minor_units(quote.final_price, quote.currency),
                "recurring": {"interval": "month", "interval_count": interval_months},
                "product_data": {"name": f"Fluentdesk {quote.plan.value.capitalize()}"},
            },
            "quantity": 1,
        }

    session = stripe_client.checkout.Session.create(
        mode="subscription",
        customer_email=email,
        client_reference_id=user_id,
        line_items=[line_item],
        metadata=metadata,
        subscription_data={"metadata": metadata},
        success_url=success_url,
        cancel_url=cancel_url,
    )
    return session["url"]


def map_checkout_exception(exc: Exception) -> tuple[int, str]:
    """Map Stripe checkout errors to client-safe messages."""
    message = str(exc).strip()
    lowered = message.lower()
    if "no such price" in lowered or ("price" in lowered and "invalid" in lowered):
        return 400, "Selected plan is no longer available"
    if "customer" in lowered and ("invalid" in lowered or "no such" in lowered):
        return 400, "Unable to start checkout for this account"
    logger.warning("Stripe checkout error: %s", message or exc.__class__.__name__)
    return 503, "Unable to create checkout session. Please try again shortly."
