"""Student-facing promo code endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fluentdesk.models import User
from fluentdesk.schemas.billing import Plan, PromoCodeError
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_user, get_db
from api.services.pricing import quote_price
from api.services.promo_code_service import (
    PromoCodeRejected,
    list_available_promo_codes,
    list_usage_for_user,
    redeem_promo_code,
    serialize_promo_code_usage,
    validate_promo_code,
)

router = APIRouter()

_CONFLICT_ERRORS = {PromoCodeError.ALREADY_USED, PromoCodeError.LIMIT_REACHED}


class PromoCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    plan: Plan

    @field_validator("code")
    @classmethod
    def _trim_code(cls, value: str) -> str:
        return value.strip()


def _rejection_detail(error: PromoCodeError | None, message: str | None) -> dict:
    return {"error": error.value if error else None, "message": message}


@router.get("/available")
async def available_promo_codes(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    del user
    codes = await list_available_promo_codes(db)
    return [
        {
            "code": code.code,
            "description": code.description,
            "discount_percentage": code.discount_percentage,
            "valid_until": code.valid_until.isoformat() if code.valid_until else None,
            "applicable_plans": list(code.applicable_plans or []),
        }
        for code in codes
    ]


@router.post("/validate")
async def validate_code(
    req: PromoCodeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Check a code without redeeming it."""
    result = await validate_promo_code(db, req.code, user.id, req.plan)
    if not result.valid or result.promo_code is None:
        return {"valid": False, **_rejection_detail(result.error, result.message)}

    promo_code = result.promo_code
    quote = quote_price(req.plan, promo_code.discount_percentage)
    return {
        "valid": True,
        "code": promo_code.code,
        "description": promo_code.description,
        "discount_percentage": promo_code.discount_percentage,
        "quote": quote.model_dump(mode="json"),
    }


@router.post("/apply")
async def apply_code(
    req: PromoCodeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Redeem a code for the current user; at most once per user and code."""
    try:
        promo_code, usage = await redeem_promo_code(db, raw_code=req.code, user=user, plan=req.plan)
    except PromoCodeRejected as exc:
        status_code = 409 if exc.error in _CONFLICT_ERRORS else 400
        raise HTTPException(status_code=status_code, detail=_rejection_detail(exc.error, exc.message))

    quote = quote_price(req.plan, usage.discount_percentage)
    return {
        "success": True,
        "code": promo_code.code,
        "discount_percentage": usage.discount_percentage,
        "plan": usage.plan,
        "applied_at": usage.applied_at.isoformat(),
        "quote": quote.model_dump(mode="json"),
    }


@router.get("/history")
async def redemption_history(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    usage = await list_usage_for_user(db, user.id)
    return [serialize_promo_code_usage(entry) for entry in usage]
