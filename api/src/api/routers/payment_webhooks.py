"""Payment provider webhook handlers."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fluentdesk.config import get_settings
from fluentdesk.schemas.billing import PaymentEvent
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from api.services.billing_config import resolve_billing_config
from api.services.paddle_service import (
    WebhookSignatureError,
    parse_paddle_event,
    verify_paddle_signature,
)
from api.services.stripe_service import parse_stripe_event, verify_stripe_signature
from api.services.subscription_reconciler import reconcile_payment_event

logger = logging.getLogger(__name__)

router = APIRouter()


async def _reconcile(
    db: AsyncSession,
    provider: str,
    provider_event_type: str,
    event: PaymentEvent | None,
) -> dict:
    if event is None:
        logger.info("Unhandled %s webhook type acknowledged: %s", provider, provider_event_type)
        return {"status": "ignored"}
    if not event.event_id:
        raise HTTPException(status_code=400, detail="Missing event id")
    outcome = await reconcile_payment_event(db, event)
    return {"status": outcome}


@router.post("/paddle")
async def paddle_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await request.body()
    config = await resolve_billing_config(db)
    try:
        body = verify_paddle_signature(
            payload,
            request.headers.get("Paddle-Signature"),
            config.paddle_webhook_secret,
            tolerance_seconds=get_settings().webhook_tolerance_seconds,
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except WebhookSignatureError as exc:
        logger.warning("Rejected Paddle webhook: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid signature")

    provider_event_type = str(body.get("event_type") or "")
    return await _reconcile(db, "paddle", provider_event_type, parse_paddle_event(body))


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await request.body()
    config = await resolve_billing_config(db)
    try:
        body = verify_stripe_signature(
            payload,
            request.headers.get("Stripe-Signature"),
            config.stripe_webhook_secret,
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except WebhookSignatureError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid signature")

    provider_event_type = str(body.get("type") or "")
    return await _reconcile(db, "stripe", provider_event_type, parse_stripe_event(body))
