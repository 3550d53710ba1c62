"""Tests for the Paddle and Stripe webhook endpoints."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, patch

import pytest
from fluentdesk.models import PaymentHistory, Subscription, WebhookEvent
from sqlalchemy import select

PADDLE_SECRET = "pdl_ntfset_test_secret"


def paddle_headers(payload: bytes, secret: str = PADDLE_SECRET) -> dict[str, str]:
    ts = int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}:".encode() + payload, hashlib.sha256).hexdigest()
    return {"Paddle-Signature": f"ts={ts};h1={digest}", "Content-Type": "application/json"}


def paddle_transaction(event_id: str = "evt_01", transaction_id: str = "txn_01") -> bytes:
    return json.dumps(
        {
            "event_id": event_id,
            "event_type": "transaction.completed",
            "occurred_at": "2026-03-15T12:00:00Z",
            "data": {
                "id": transaction_id,
                "customer_id": "ctm_01",
                "subscription_id": "sub_01",
                "currency_code": "USD",
                "custom_data": {"userId": "student-1", "plan": "basic"},
                "details": {"totals": {"grand_total": "2900"}},
            },
        }
    ).encode()


class TestPaddleWebhook:
    @pytest.mark.asyncio
    async def test_invalid_signature_is_rejected(self, client):
        payload = paddle_transaction()
        with patch(
            "api.routers.payment_webhooks.reconcile_payment_event",
            new=AsyncMock(),
        ) as reconcile:
            resp = await client.post(
                "/v1/webhooks/paddle",
                content=payload,
                headers=paddle_headers(payload, "wrong-secret"),
            )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid signature"
        reconcile.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_signature_is_rejected(self, client):
        resp = await client.post("/v1/webhooks/paddle", content=paddle_transaction())
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unhandled_type_is_acknowledged(self, client):
        payload = json.dumps({"event_id": "evt_x", "event_type": "address.updated", "data": {}}).encode()
        with patch(
            "api.routers.payment_webhooks.reconcile_payment_event",
            new=AsyncMock(),
        ) as reconcile:
            resp = await client.post("/v1/webhooks/paddle", content=payload, headers=paddle_headers(payload))
        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored"}
        reconcile.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_event_id_is_rejected(self, client):
        payload = json.dumps(
            {"event_type": "subscription.canceled", "data": {"id": "sub_01", "custom_data": {}}}
        ).encode()
        resp = await client.post("/v1/webhooks/paddle", content=payload, headers=paddle_headers(payload))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Missing event id"

    @pytest.mark.asyncio
    async def test_verified_event_is_reconciled(self, client):
        payload = paddle_transaction()
        with patch(
            "api.routers.payment_webhooks.reconcile_payment_event",
            new=AsyncMock(return_value="processed"),
        ) as reconcile:
            resp = await client.post("/v1/webhooks/paddle", content=payload, headers=paddle_headers(payload))
        assert resp.status_code == 200
        assert resp.json() == {"status": "processed"}
        event = reconcile.await_args.args[1]
        assert event.provider == "paddle"
        assert event.transaction_id == "txn_01"
        assert event.user_id == "student-1"

    @pytest.mark.asyncio
    async def test_unconfigured_secret_returns_503(self, client, monkeypatch):
        from fluentdesk.config import reset_settings_cache

        monkeypatch.setenv("PADDLE_WEBHOOK_SECRET", "")
        reset_settings_cache()
        payload = paddle_transaction()
        resp = await client.post("/v1/webhooks/paddle", content=payload, headers=paddle_headers(payload))
        assert resp.status_code == 503

    async def test_end_to_end_activation_and_replay(self, db_client, db, student):
        db.add(student)
        await db.commit()
        payload = paddle_transaction("evt_e2e", "txn_e2e")

        first = await db_client.post("/v1/webhooks/paddle", content=payload, headers=paddle_headers(payload))
        replay = await db_client.post("/v1/webhooks/paddle", content=payload, headers=paddle_headers(payload))

        assert first.json() == {"status": "processed"}
        assert replay.status_code == 200
        assert replay.json() == {"status": "duplicate_ignored"}

        subscription = await db.scalar(select(Subscription).where(Subscription.user_id == "student-1"))
        assert subscription.status == "active"
        assert subscription.plan == "basic"
        ledger = (await db.execute(select(PaymentHistory))).scalars().all()
        assert [row.provider_transaction_id for row in ledger] == ["txn_e2e"]
        events = (await db.execute(select(WebhookEvent))).scalars().all()
        assert [(e.event_id, e.outcome) for e in events] == [("evt_e2e", "processed")]


class TestStripeWebhook:
    @pytest.mark.asyncio
    async def test_unconfigured_returns_503(self, client):
        resp = await client.post(
            "/v1/webhooks/stripe",
            content=b"{}",
            headers={"Stripe-Signature": "t=1,v1=abc"},
        )
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client, monkeypatch):
        from fluentdesk.config import reset_settings_cache

        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
        reset_settings_cache()
        resp = await client.post(
            "/v1/webhooks/stripe",
            content=b'{"id": "evt_1", "type": "invoice.paid"}',
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid signature"

    @pytest.mark.asyncio
    async def test_verified_event_is_reconciled(self, client, monkeypatch):
        from fluentdesk.config import reset_settings_cache

        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
        reset_settings_cache()
        body = {
            "id": "evt_1",
            "type": "customer.subscription.deleted",
            "created": 1_773_576_000,
            "data": {"object": {"id": "sub_1", "status": "canceled", "metadata": {"user_id": "student-1"}}},
        }
        with (
            patch(
                "api.routers.payment_webhooks.verify_stripe_signature",
                return_value=body,
            ),
            patch(
                "api.routers.payment_webhooks.reconcile_payment_event",
                new=AsyncMock(return_value="processed"),
            ) as reconcile,
        ):
            resp = await client.post(
                "/v1/webhooks/stripe",
                content=json.dumps(body).encode(),
                headers={"Stripe-Signature": "t=1,v1=abc"},
            )
        assert resp.status_code == 200
        event = reconcile.await_args.args[1]
        assert event.provider == "stripe"
        assert event.event_type.value == "subscription_canceled"
