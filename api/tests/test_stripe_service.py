from __future__ import annotations

import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from api.services.paddle_service import WebhookSignatureError
from api.services.pricing import quote_price
from api.services.stripe_service import (
    create_checkout_session,
    map_checkout_exception,
    parse_stripe_event,
    verify_stripe_signature,
)
from fluentdesk.schemas.billing import PaymentEventType, Plan

WEBHOOK_SECRET = "whsec_test_secret"


def stripe_header(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def invoice_paid(**metadata) -> dict:
    return {
        "id": "evt_1Q",
        "object": "event",
        "type": "invoice.paid",
        "created": 1_773_576_000,
        "data": {
            "object": {
                "id": "in_1Q",
                "object": "invoice",
                "customer": "cus_1Q",
                "currency": "usd",
                "amount_paid": 4900,
                "hosted_invoice_url": "https://invoice.stripe.test/in_1Q",
                "parent": {
                    "subscription_details": {
                        "subscription": "sub_1Q",
                        "metadata": {"user_id": "student-1", "plan": "premium", **metadata},
                    }
                },
            }
        },
    }


class TestVerifyStripeSignature:
    def test_valid_signature(self):
        payload = json.dumps(invoice_paid()).encode()
        body = verify_stripe_signature(payload, stripe_header(payload), WEBHOOK_SECRET)
        assert body["id"] == "evt_1Q"

    def test_invalid_signature(self):
        payload = json.dumps(invoice_paid()).encode()
        with pytest.raises(WebhookSignatureError):
            verify_stripe_signature(payload, stripe_header(payload, "whsec_other"), WEBHOOK_SECRET)

    def test_missing_header(self):
        with pytest.raises(WebhookSignatureError):
            verify_stripe_signature(b"{}", None, WEBHOOK_SECRET)

    def test_missing_secret(self):
        with pytest.raises(RuntimeError):
            verify_stripe_signature(b"{}", "t=1,v1=abc", "")


class TestParseStripeEvent:
    def test_invoice_paid_reads_parent_metadata(self):
        event = parse_stripe_event(invoice_paid(discount_percentage="20", promo_code="WELCOME20"))
        assert event.event_type is PaymentEventType.PAYMENT_COMPLETED
        assert event.user_id == "student-1"
        assert event.plan is Plan.PREMIUM
        assert event.subscription_id == "sub_1Q"
        assert event.transaction_id == "in_1Q"
        assert event.amount_total == Decimal("49")
        assert event.currency == "USD"
        assert event.discount_percentage == 20
        assert event.promo_code == "WELCOME20"
        assert event.receipt_url == "https://invoice.stripe.test/in_1Q"

    def test_invoice_legacy_subscription_details(self):
        body = invoice_paid()
        invoice = body["data"]["object"]
        invoice["subscription"] = "sub_legacy"
        invoice["subscription_details"] = {"metadata": {"user_id": "student-9", "plan": "basic"}}
        del invoice["parent"]

        event = parse_stripe_event(body)
        assert event.user_id == "student-9"
        assert event.subscription_id == "sub_legacy"

    def test_subscription_updated(self):
        event = parse_stripe_event(
            {
                "id": "evt_2Q",
                "type": "customer.subscription.updated",
                "created": 1_773_576_000,
                "data": {
                    "object": {
                        "id": "sub_1Q",
                        "customer": "cus_1Q",
                        "status": "unpaid",
                        "metadata": {"user_id": "student-1", "plan": "premium"},
                    }
                },
            }
        )
        assert event.event_type is PaymentEventType.SUBSCRIPTION_UPDATED
        assert event.provider_status == "unpaid"
        assert event.subscription_id == "sub_1Q"

    def test_checkout_completed_maps_to_created(self):
        event = parse_stripe_event(
            {
                "id": "evt_3Q",
                "type": "checkout.session.completed",
                "created": 1_773_576_000,
                "data": {
                    "object": {
                        "id": "cs_1Q",
                        "customer": "cus_1Q",
                        "subscription": "sub_1Q",
                        "metadata": {"user_id": "student-1", "plan": "basic"},
                    }
                },
            }
        )
        assert event.event_type is PaymentEventType.SUBSCRIPTION_CREATED
        assert event.subscription_id == "sub_1Q"
        assert event.transaction_id is None

    def test_unmapped_type(self):
        assert parse_stripe_event({"id": "evt_4Q", "type": "charge.refunded"}) is None


class TestCreateCheckoutSession:
    def test_undiscounted_uses_configured_price(self):
        with patch("stripe.checkout.Session.create", new=MagicMock(return_value={"url": "https://pay"})) as create:
            url = create_checkout_session(
                secret_key="sk_test_123",
                user_id="student-1",
                email="student-1@fluentdesk.test",
                quote=quote_price(Plan.BASIC),
                price_id="price_basic",
                interval_months=1,
                promo_code=None,
                success_url="https://app.fluentdesk.test/ok",
                cancel_url="https://app.fluentdesk.test/cancel",
            )
        assert url == "https://pay"
        kwargs = create.call_args.kwargs
        assert kwargs["line_items"] == [{"price": "price_basic", "quantity": 1}]
        assert kwargs["metadata"]["user_id"] == "student-1"
        assert "promo_code" not in kwargs["metadata"]

    def test_discounted_checkout_sends_final_amount(self):
        with patch("stripe.checkout.Session.create", new=MagicMock(return_value={"url": "https://pay"})) as create:
            create_checkout_session(
                secret_key="sk_test_123",
                user_id="student-1",
                email="student-1@fluentdesk.test",
                quote=quote_price(Plan.PREMIUM, 20),
                price_id="price_premium",
                interval_months=1,
                promo_code="WELCOME20",
                success_url="https://app.fluentdesk.test/ok",
                cancel_url="https://app.fluentdesk.test/cancel",
            )
        kwargs = create.call_args.kwargs
        price_data = kwargs["line_items"][0]["price_data"]
        assert price_data["unit_amount"] == 3920
        assert price_data["currency"] == "usd"
        assert kwargs["subscription_data"]["metadata"]["promo_code"] == "WELCOME20"
        assert kwargs["metadata"]["discount_percentage"] == "20"

    def test_requires_secret_key(self):
        with pytest.raises(RuntimeError):
            create_checkout_session(
                secret_key="",
                user_id="student-1",
                email="x@fluentdesk.test",
                quote=quote_price(Plan.BASIC),
                price_id="",
                interval_months=1,
                promo_code=None,
                success_url="https://a",
                cancel_url="https://b",
            )


@pytest.mark.parametrize(
    ("message", "status_code"),
    [
        ("No such price: 'price_123'", 400),
        ("Invalid customer id", 400),
        ("Connection reset", 503),
    ],
)
def test_map_checkout_exception(message, status_code):
    assert map_checkout_exception(Exception(message))[0] == status_code
