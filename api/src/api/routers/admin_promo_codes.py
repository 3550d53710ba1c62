"""Admin promo code management."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException
from fluentdesk.models import AuditLog, User
from fluentdesk.schemas.billing import Plan
from fluentdesk.services.timestamps import as_utc
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, require_admin
from api.services.promo_code_service import (
    PromoCodeConflictError,
    PromoCodeFormatError,
    PromoCodeNotFoundError,
    PromoCodeWindowError,
    create_promo_code,
    get_promo_code_by_id,
    list_promo_codes,
    list_usage_for_code,
    normalize_promo_code,
    permanently_delete_promo_code,
    promo_code_stats,
    serialize_promo_code,
    serialize_promo_code_usage,
    set_promo_code_status,
    soft_delete_promo_code,
    update_promo_code,
)

router = APIRouter()


def _jsonable_detail(payload: dict) -> dict:
    normalized: dict[str, object] = {}
    for key, value in payload.items():
        if isinstance(value, datetime):
            normalized[key] = as_utc(value).isoformat()
        elif isinstance(value, list):
            normalized[key] = [item.value if isinstance(item, Plan) else item for item in value]
        else:
            normalized[key] = value
    return normalized


def _trim(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def _check_window(valid_from: datetime | None, valid_until: datetime | None) -> None:
    start = as_utc(valid_from)
    end = as_utc(valid_until)
    if start and end and end <= start:
        raise ValueError("valid_until must be after valid_from")


class PromoCodeCreateRequest(BaseModel):
    code: str = Field(min_length=3, max_length=32)
    description: str | None = Field(default=None, max_length=240)
    discount_percentage: int = Field(ge=1, le=100)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    usage_limit: int | None = Field(default=None, ge=1)
    applicable_plans: list[Plan] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return normalize_promo_code(value)

    @field_validator("description")
    @classmethod
    def _trim_description(cls, value: str | None) -> str | None:
        return _trim(value)

    @model_validator(mode="after")
    def _validate_window(self) -> PromoCodeCreateRequest:
        _check_window(self.valid_from, self.valid_until)
        return self


class PromoCodeUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str | None = Field(default=None, min_length=3, max_length=32)
    description: str | None = Field(default=None, max_length=240)
    discount_percentage: int | None = Field(default=None, ge=1, le=100)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    usage_limit: int | None = Field(default=None, ge=1)
    applicable_plans: list[Plan] | None = None
    is_active: bool | None = None

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str | None) -> str | None:
        return normalize_promo_code(value) if value is not None else None

    @field_validator("description")
    @classmethod
    def _trim_description(cls, value: str | None) -> str | None:
        return _trim(value)

    @model_validator(mode="after")
    def _validate_window(self) -> PromoCodeUpdateRequest:
        _check_window(self.valid_from, self.valid_until)
        return self


class PromoCodeStatusRequest(BaseModel):
    is_active: bool


def _audit(user: User, action: str, target_id: str, detail: dict) -> AuditLog:
    return AuditLog(
        user_id=user.id,
        action=action,
        target_type="promo_code",
        target_id=target_id,
        detail=detail,
    )


@router.get("/")
async def list_codes(
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    return [serialize_promo_code(code) for code in await list_promo_codes(db, active_only=active_only)]


@router.post("/")
async def create_code(
    req: PromoCodeCreateRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    valid_until = as_utc(req.valid_until)
    if valid_until and valid_until <= datetime.now(UTC):
        raise HTTPException(status_code=400, detail="valid_until must be in the future")

    admin_id = user.id
    try:
        promo_code = await create_promo_code(
            db,
            code=req.code,
            discount_percentage=req.discount_percentage,
            description=req.description,
            valid_from=req.valid_from,
            valid_until=valid_until,
            usage_limit=req.usage_limit,
            applicable_plans=list(req.applicable_plans),
            is_active=req.is_active,
            created_by=admin_id,
        )
    except PromoCodeConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    db.add(
        AuditLog(
            user_id=admin_id,
            action="promo_code.create",
            target_type="promo_code",
            target_id=str(promo_code.id),
            detail={
                "code": promo_code.code,
                "discount_percentage": promo_code.discount_percentage,
                "usage_limit": promo_code.usage_limit,
            },
        )
    )
    return serialize_promo_code(promo_code)


@router.get("/{promo_code_id}")
async def get_code(
    promo_code_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    try:
        promo_code = await get_promo_code_by_id(db, promo_code_id)
    except PromoCodeNotFoundError:
        raise HTTPException(status_code=404, detail="Promo code not found")
    return serialize_promo_code(promo_code)


@router.patch("/{promo_code_id}")
async def update_code(
    promo_code_id: uuid.UUID,
    req: PromoCodeUpdateRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No changes provided")
    for field in ("code", "discount_percentage", "is_active"):
        if field in changes and changes[field] is None:
            raise HTTPException(status_code=400, detail=f"{field} cannot be null")

    try:
        promo_code = await update_promo_code(db, promo_code_id, changes)
    except PromoCodeNotFoundError:
        raise HTTPException(status_code=404, detail="Promo code not found")
    except PromoCodeConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except (PromoCodeFormatError, PromoCodeWindowError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    db.add(_audit(user, "promo_code.update", str(promo_code.id), _jsonable_detail(changes)))
    return serialize_promo_code(promo_code)


@router.post("/{promo_code_id}/status")
async def set_code_status(
    promo_code_id: uuid.UUID,
    req: PromoCodeStatusRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    try:
        promo_code = await set_promo_code_status(db, promo_code_id, is_active=req.is_active)
    except PromoCodeNotFoundError:
        raise HTTPException(status_code=404, detail="Promo code not found")
    db.add(
        _audit(
            user,
            "promo_code.activate" if req.is_active else "promo_code.deactivate",
            str(promo_code.id),
            {"code": promo_code.code},
        )
    )
    return serialize_promo_code(promo_code)


@router.delete("/{promo_code_id}")
async def deactivate_code(
    promo_code_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    try:
        promo_code = await soft_delete_promo_code(db, promo_code_id)
    except PromoCodeNotFoundError:
        raise HTTPException(status_code=404, detail="Promo code not found")
    db.add(_audit(user, "promo_code.delete", str(promo_code.id), {"code": promo_code.code}))
    return {"status": "deactivated"}


@router.delete("/{promo_code_id}/permanent")
async def delete_code_permanently(
    promo_code_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    try:
        code = await permanently_delete_promo_code(db, promo_code_id)
    except PromoCodeNotFoundError:
        raise HTTPException(status_code=404, detail="Promo code not found")
    db.add(_audit(user, "promo_code.delete_permanent", str(promo_code_id), {"code": code}))
    return {"status": "deleted"}


@router.get("/{promo_code_id}/usage")
async def code_usage(
    promo_code_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    usage = await list_usage_for_code(db, promo_code_id)
    return [serialize_promo_code_usage(entry) for entry in usage]


@router.get("/{promo_code_id}/stats")
async def code_stats(
    promo_code_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    try:
        await get_promo_code_by_id(db, promo_code_id)
    except PromoCodeNotFoundError:
        raise HTTPException(status_code=404, detail="Promo code not found")
    return await promo_code_stats(db, promo_code_id)
