"""Admin billing configuration and subscription maintenance."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fluentdesk.models import AuditLog, User
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, require_admin
from api.services.billing_config import load_billing_config, save_billing_config
from api.services.subscription_maintenance import run_subscription_maintenance

router = APIRouter()


class BillingConfigUpdateRequest(BaseModel):
    provider: str | None = None
    test_mode: bool | None = None
    paddle_environment: str | None = None
    paddle_client_token: str | None = None
    paddle_webhook_secret: str | None = None
    stripe_publishable_key: str | None = None
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    price_ids: dict[str, dict[str, str]] | None = None


@router.get("/config")
async def get_billing_config(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    return await load_billing_config(db)


@router.put("/config")
async def update_billing_config(
    req: BillingConfigUpdateRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No changes provided")
    try:
        payload = await save_billing_config(db, changes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    db.add(
        AuditLog(
            user_id=user.id,
            action="billing.config.update",
            target_type="billing",
            target_id=payload["provider"],
            detail={"fields": sorted(changes)},
        )
    )
    return payload


@router.post("/expire")
async def expire_subscriptions(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    summary = await run_subscription_maintenance(db, trigger="manual")
    db.add(
        AuditLog(
            user_id=user.id,
            action="billing.maintenance.manual",
            target_type="billing",
            target_id="subscriptions",
            detail=summary,
        )
    )
    return summary
