"""Tests for the student promo code endpoints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import make_promo_code, make_user
from fluentdesk.models import PromoCode, PromoCodeUsage
from sqlalchemy import func, select


@pytest.fixture
async def seeded(db, student, admin_user):
    db.add_all(
        [
            student,
            admin_user,
            make_promo_code("WELCOME20", discount_percentage=20),
            make_promo_code("TEAMS", applicable_plans=["enterprise"]),
            make_promo_code("OLD", valid_until=datetime.now(UTC) - timedelta(days=1)),
        ]
    )
    await db.commit()
    return db


class TestValidateEndpoint:
    async def test_valid_code_returns_quote(self, db_client, seeded):
        resp = await db_client.post(
            "/v1/promo-codes/validate", json={"code": "welcome20", "plan": "premium"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["valid"] is True
        assert data["code"] == "WELCOME20"
        assert data["quote"]["original_price"] == "49.00"
        assert data["quote"]["final_price"] == "39.20"

    async def test_rejection_is_reported_in_body(self, db_client, seeded):
        resp = await db_client.post("/v1/promo-codes/validate", json={"code": "TEAMS", "plan": "basic"})
        assert resp.status_code == 200
        assert resp.json() == {
            "valid": False,
            "error": "PlanNotApplicable",
            "message": "This code is only valid for: Enterprise",
        }

    async def test_validate_does_not_consume(self, db_client, seeded):
        for _ in range(2):
            await db_client.post("/v1/promo-codes/validate", json={"code": "WELCOME20", "plan": "basic"})
        count = await seeded.scalar(select(PromoCode.usage_count).where(PromoCode.code == "WELCOME20"))
        assert count == 0

    async def test_unknown_plan_is_422(self, db_client, seeded):
        resp = await db_client.post("/v1/promo-codes/validate", json={"code": "WELCOME20", "plan": "gold"})
        assert resp.status_code == 422


class TestApplyEndpoint:
    async def test_apply_then_reapply(self, db_client, seeded):
        first = await db_client.post("/v1/promo-codes/apply", json={"code": "WELCOME20", "plan": "basic"})
        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["quote"]["final_price"] == "23.20"

        second = await db_client.post("/v1/promo-codes/apply", json={"code": "WELCOME20", "plan": "basic"})
        assert second.status_code == 409
        assert second.json()["detail"]["error"] == "AlreadyUsed"

        receipts = await seeded.scalar(select(func.count()).select_from(PromoCodeUsage))
        assert receipts == 1

    async def test_expired_code_is_400(self, db_client, seeded):
        resp = await db_client.post("/v1/promo-codes/apply", json={"code": "OLD", "plan": "basic"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == {"error": "Expired", "message": "This promo code has expired"}

    async def test_history_lists_own_redemptions(self, db_client, seeded):
        seeded.add(make_user("student-2"))
        seeded.add(
            PromoCodeUsage(
                redemption_key="other",
                promo_code="TEAMS",
                user_id="student-2",
                plan="enterprise",
                discount_percentage=20,
                applied_at=datetime.now(UTC),
            )
        )
        await seeded.commit()
        await db_client.post("/v1/promo-codes/apply", json={"code": "WELCOME20", "plan": "premium"})

        resp = await db_client.get("/v1/promo-codes/history")
        assert resp.status_code == 200
        assert [(row["promo_code"], row["plan"]) for row in resp.json()] == [("WELCOME20", "premium")]


async def test_available_hides_expired(db_client, seeded):
    resp = await db_client.get("/v1/promo-codes/available")
    assert resp.status_code == 200
    assert sorted(row["code"] for row in resp.json()) == ["TEAMS", "WELCOME20"]


@pytest.mark.asyncio
async def test_promo_endpoints_require_auth(unauthenticated_client):
    resp = await unauthenticated_client.post(
        "/v1/promo-codes/validate", json={"code": "WELCOME20", "plan": "basic"}
    )
    assert resp.status_code == 401
