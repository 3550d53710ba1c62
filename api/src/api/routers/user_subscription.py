"""User subscription management endpoints."""

from __future__ import annotations

import logging
from urllib.parse import urlparse

import stripe
from fastapi import APIRouter, Depends, HTTPException
from fluentdesk.config import get_settings
from fluentdesk.models import PaymentHistory, Subscription, User
from fluentdesk.schemas.billing import Plan
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_user, get_db
from api.services.billing_config import resolve_billing_config
from api.services.checkout_service import build_checkout
from api.services.pricing import PLAN_CATALOG, quote_price, serialize_plan
from api.services.promo_code_service import redeemed_discount_for
from api.services.stripe_service import map_checkout_exception
from api.services.subscription_reconciler import OUTCOME_PROCESSED, activate_without_payment

logger = logging.getLogger(__name__)

router = APIRouter()


class QuoteRequest(BaseModel):
    plan: Plan


class CheckoutRequest(BaseModel):
    plan: Plan
    success_url: str
    cancel_url: str


class TestActivationRequest(BaseModel):
    plan: Plan


def _origin(url: str) -> str | None:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def _validate_redirect_url(url: str, *, field_name: str) -> str:
    settings = get_settings()
    allowed_origins = {_origin(settings.site_url), _origin(settings.admin_url)}
    allowed_origins.discard(None)

    parsed_origin = _origin(url)
    if parsed_origin is None or parsed_origin not in allowed_origins:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid {field_name}: URL must match configured site/admin origin",
        )
    return url


def serialize_subscription(subscription: Subscription | None) -> dict | None:
    if subscription is None:
        return None
    return {
        "plan": subscription.plan,
        "status": subscription.status,
        "start_date": subscription.start_date.isoformat() if subscription.start_date else None,
        "end_date": subscription.end_date.isoformat() if subscription.end_date else None,
        "provider": subscription.provider,
        "discount_percentage": subscription.discount_percentage,
        "applied_promo_code": subscription.applied_promo_code,
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }


async def _current_subscription(db: AsyncSession, user_id: str) -> Subscription | None:
    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalars().first()


@router.get("/")
async def get_subscription_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    subscription = await _current_subscription(db, user.id)
    return {
        "subscription": serialize_subscription(subscription),
        "applied_promo_code": user.applied_promo_code,
        "applied_discount_percentage": user.applied_discount_percentage,
        "applied_promo_plan": user.applied_promo_plan,
    }


@router.get("/plans")
async def list_plans():
    return [serialize_plan(definition) for definition in PLAN_CATALOG.values()]


@router.post("/quote")
async def quote_plan(
    req: QuoteRequest,
    user: User = Depends(get_current_user),
):
    """Price a plan with the discount the user redeemed for it, if any."""
    discount, _ = redeemed_discount_for(user, req.plan)
    return quote_price(req.plan, discount).model_dump(mode="json")


@router.post("/checkout")
async def create_checkout(
    req: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    config = await resolve_billing_config(db)
    if not config.is_configured:
        raise HTTPException(status_code=501, detail="Payment provider not configured")

    success_url = _validate_redirect_url(req.success_url, field_name="success_url")
    cancel_url = _validate_redirect_url(req.cancel_url, field_name="cancel_url")
    try:
        return build_checkout(
            config,
            user,
            req.plan,
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except stripe.StripeError as exc:
        status_code, detail = map_checkout_exception(exc)
        raise HTTPException(status_code=status_code, detail=detail)


@router.post("/test-activate")
async def test_activate(
    req: TestActivationRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Activate a plan without charging; only in test mode or without a provider."""
    config = await resolve_billing_config(db)
    if not config.allows_test_activation:
        raise HTTPException(status_code=403, detail="Test activation is disabled")

    outcome, subscription = await activate_without_payment(db, user, req.plan)
    if outcome != OUTCOME_PROCESSED:
        raise HTTPException(status_code=409, detail=f"Activation not applied: {outcome}")
    return {"status": outcome, "subscription": serialize_subscription(subscription)}


@router.get("/payments")
async def payment_history(
    limit: int = 50,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(PaymentHistory)
        .where(PaymentHistory.user_id == user.id)
        .order_by(PaymentHistory.created_at.desc())
        .limit(max(1, min(limit, 200)))
    )
    return [
        {
            "id": str(entry.id),
            "provider": entry.provider,
            "transaction_id": entry.provider_transaction_id,
            "plan": entry.plan,
            "amount": str(entry.amount) if entry.amount is not None else None,
            "currency": entry.currency,
            "status": entry.status,
            "description": entry.description,
            "receipt_url": entry.receipt_url,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in result.scalars().all()
    ]
