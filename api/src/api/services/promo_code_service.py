"""Promo code validation, redemption and admin management."""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fluentdesk.models import PromoCode, PromoCodeUsage, User
from fluentdesk.schemas.billing import Plan, PromoCodeError
from fluentdesk.services.timestamps import as_utc
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.notification_service import notify_admins_of_redemption

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9-]+$")
MAX_LIST_SIZE = 500

_REJECTION_MESSAGES: dict[PromoCodeError, str] = {
    PromoCodeError.NOT_FOUND: "Promo code not found",
    PromoCodeError.INACTIVE: "This promo code is no longer active",
    PromoCodeError.NOT_YET_VALID: "This promo code is not valid yet",
    PromoCodeError.EXPIRED: "This promo code has expired",
    PromoCodeError.LIMIT_REACHED: "This promo code has reached its usage limit",
    PromoCodeError.ALREADY_USED: "You have already used this promo code",
    PromoCodeError.PLAN_NOT_APPLICABLE: "This code is not valid for the selected plan",
}


class PromoCodeFormatError(ValueError):
    """Raised when a code contains anything but letters, digits and dashes."""


class PromoCodeConflictError(ValueError):
    """Raised when creating or renaming onto a code that already exists."""


class PromoCodeNotFoundError(LookupError):
    pass


class PromoCodeWindowError(ValueError):
    """Raised when an edit would leave valid_until at or before valid_from."""


class PromoCodeRejected(Exception):
    """A redemption was refused; ``error`` says which check failed."""

    def __init__(self, error: PromoCodeError, message: str | None = None) -> None:
        self.error = error
        self.message = message or _REJECTION_MESSAGES[error]
        super().__init__(self.message)


@dataclass
class PromoCodeValidation:
    valid: bool
    error: PromoCodeError | None = None
    message: str | None = None
    promo_code: PromoCode | None = None


def normalize_promo_code(raw: str) -> str:
    """Trim and upper-case a code, rejecting characters outside [A-Z0-9-]."""
    code = str(raw or "").strip().upper()
    if not code or not CODE_PATTERN.fullmatch(code):
        raise PromoCodeFormatError("Promo code can only contain letters, numbers, and dashes")
    return code


def redemption_key(user_id: str, code: str) -> str:
    """Deterministic receipt key for one (user, code) pair."""
    raw = f"{user_id}:{str(code).strip().upper()}"
    return hashlib.sha256(raw.encode()).hexdigest()


def _plan_value(plan: Plan | str) -> str:
    return plan.value if isinstance(plan, Plan) else str(plan).strip().lower()


def _reject(error: PromoCodeError, message: str | None = None) -> PromoCodeValidation:
    return PromoCodeValidation(
        valid=False,
        error=error,
        message=message or _REJECTION_MESSAGES[error],
    )


def has_usage_left(promo_code: PromoCode) -> bool:
    limit = promo_code.usage_limit
    return limit is None or int(promo_code.usage_count or 0) < limit


def is_promo_code_usable(promo_code: PromoCode, now: datetime | None = None) -> bool:
    """True when active, inside its window and below its usage limit."""
    current = now or datetime.now(UTC)
    if not promo_code.is_active:
        return False
    valid_from = as_utc(promo_code.valid_from)
    if valid_from and current < valid_from:
        return False
    valid_until = as_utc(promo_code.valid_until)
    if valid_until and current > valid_until:
        return False
    return has_usage_left(promo_code)


def serialize_promo_code(promo_code: PromoCode, now: datetime | None = None) -> dict[str, Any]:
    return {
        "id": str(promo_code.id),
        "code": promo_code.code,
        "description": promo_code.description,
        "discount_percentage": promo_code.discount_percentage,
        "valid_from": promo_code.valid_from.isoformat() if promo_code.valid_from else None,
        "valid_until": promo_code.valid_until.isoformat() if promo_code.valid_until else None,
        "usage_limit": promo_code.usage_limit,
        "usage_count": int(promo_code.usage_count or 0),
        "applicable_plans": list(promo_code.applicable_plans or []),
        "is_active": promo_code.is_active,
        "is_usable_now": is_promo_code_usable(promo_code, now),
        "created_at": promo_code.created_at.isoformat() if promo_code.created_at else None,
        "updated_at": promo_code.updated_at.isoformat() if promo_code.updated_at else None,
    }


def serialize_promo_code_usage(usage: PromoCodeUsage) -> dict[str, Any]:
    return {
        "id": str(usage.id),
        "promo_code_id": str(usage.promo_code_id) if usage.promo_code_id else None,
        "promo_code": usage.promo_code,
        "user_id": usage.user_id,
        "user_name": usage.user_name,
        "user_email": usage.user_email,
        "plan": usage.plan,
        "discount_percentage": usage.discount_percentage,
        "applied_at": usage.applied_at.isoformat() if usage.applied_at else None,
    }


# --- Lookups ---


async def get_promo_code_by_code(db: AsyncSession, raw_code: str) -> PromoCode | None:
    try:
        code = normalize_promo_code(raw_code)
    except PromoCodeFormatError:
        return None
    result = await db.execute(select(PromoCode).where(PromoCode.code == code))
    return result.scalars().first()


async def get_promo_code_by_id(db: AsyncSession, promo_code_id: uuid.UUID) -> PromoCode:
    promo_code = await db.get(PromoCode, promo_code_id)
    if promo_code is None:
        raise PromoCodeNotFoundError(str(promo_code_id))
    return promo_code


async def has_user_used_promo_code(db: AsyncSession, user_id: str, raw_code: str) -> bool:
    result = await db.execute(
        select(PromoCodeUsage.id).where(
            PromoCodeUsage.redemption_key == redemption_key(user_id, raw_code)
        )
    )
    return result.scalars().first() is not None


async def list_promo_codes(db: AsyncSession, *, active_only: bool = False) -> list[PromoCode]:
    query = select(PromoCode)
    if active_only:
        query = query.where(PromoCode.is_active.is_(True))
    query = query.order_by(PromoCode.created_at.desc()).limit(MAX_LIST_SIZE)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_available_promo_codes(
    db: AsyncSession,
    now: datetime | None = None,
) -> list[PromoCode]:
    """Active codes a student may still redeem: not expired and with usage left."""
    current = now or datetime.now(UTC)
    available = []
    for promo_code in await list_promo_codes(db, active_only=True):
        valid_until = as_utc(promo_code.valid_until)
        if valid_until and valid_until <= current:
            continue
        if not has_usage_left(promo_code):
            continue
        available.append(promo_code)
    return available


async def list_usage_for_code(db: AsyncSession, promo_code_id: uuid.UUID) -> list[PromoCodeUsage]:
    result = await db.execute(
        select(PromoCodeUsage)
        .where(PromoCodeUsage.promo_code_id == promo_code_id)
        .order_by(PromoCodeUsage.applied_at.desc())
    )
    return list(result.scalars().all())


async def list_usage_for_user(db: AsyncSession, user_id: str) -> list[PromoCodeUsage]:
    result = await db.execute(
        select(PromoCodeUsage)
        .where(PromoCodeUsage.user_id == user_id)
        .order_by(PromoCodeUsage.applied_at.desc())
    )
    return list(result.scalars().all())


async def promo_code_stats(db: AsyncSession, promo_code_id: uuid.UUID) -> dict[str, Any]:
    usage = await list_usage_for_code(db, promo_code_id)
    by_plan = Counter(entry.plan for entry in usage)
    return {
        "total_usage": len(usage),
        "usage_by_plan": dict(by_plan),
    }


# --- Validation / redemption ---


async def validate_promo_code(
    db: AsyncSession,
    raw_code: str,
    user_id: str,
    plan: Plan | str,
    *,
    now: datetime | None = None,
) -> PromoCodeValidation:
    """Run the redemption checks in order, stopping at the first failure.

    Read-only: safe to call on every keystroke.
    """
    current = now or datetime.now(UTC)
    promo_code = await get_promo_code_by_code(db, raw_code)
    if promo_code is None:
        return _reject(PromoCodeError.NOT_FOUND)

    if not promo_code.is_active:
        return _reject(PromoCodeError.INACTIVE)

    valid_from = as_utc(promo_code.valid_from)
    if valid_from and current < valid_from:
        return _reject(
            PromoCodeError.NOT_YET_VALID,
            f"Promo code will be valid from {valid_from.date().isoformat()}",
        )

    valid_until = as_utc(promo_code.valid_until)
    if valid_until and current > valid_until:
        return _reject(PromoCodeError.EXPIRED)

    if not has_usage_left(promo_code):
        return _reject(PromoCodeError.LIMIT_REACHED)

    if await has_user_used_promo_code(db, user_id, promo_code.code):
        return _reject(PromoCodeError.ALREADY_USED)

    applicable = [str(p).lower() for p in (promo_code.applicable_plans or [])]
    if applicable and _plan_value(plan) not in applicable:
        labels = ", ".join(p.capitalize() for p in applicable)
        return _reject(
            PromoCodeError.PLAN_NOT_APPLICABLE,
            f"This code is only valid for: {labels}",
        )

    return PromoCodeValidation(valid=True, promo_code=promo_code)


async def apply_promo_code(
    db: AsyncSession,
    *,
    promo_code_id: uuid.UUID,
    user_id: str,
    user_name: str | None,
    user_email: str | None,
    code: str,
    discount_percentage: int,
    plan: Plan | str,
    now: datetime | None = None,
) -> PromoCodeUsage:
    """Write the receipt, bump the usage count and stamp the user, as one unit.

    Does not re-run validation. The receipt key and the conditional counter
    update turn double redemption and over-limit races into
    ``PromoCodeRejected`` instead of silent double counting. On
    ``AlreadyUsed`` the session has been rolled back.
    """
    current = now or datetime.now(UTC)
    normalized = str(code).strip().upper()
    usage = PromoCodeUsage(
        redemption_key=redemption_key(user_id, normalized),
        promo_code_id=promo_code_id,
        promo_code=normalized,
        user_id=user_id,
        user_name=user_name,
        user_email=user_email,
        plan=_plan_value(plan),
        discount_percentage=discount_percentage,
        applied_at=current,
    )
    db.add(usage)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise PromoCodeRejected(PromoCodeError.ALREADY_USED)

    result = await db.execute(
        update(PromoCode)
        .where(
            PromoCode.id == promo_code_id,
            or_(
                PromoCode.usage_limit.is_(None),
                PromoCode.usage_count < PromoCode.usage_limit,
            ),
        )
        .values(usage_count=PromoCode.usage_count + 1, updated_at=current)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.delete(usage)
        await db.flush()
        raise PromoCodeRejected(PromoCodeError.LIMIT_REACHED)

    user = await db.get(User, user_id)
    if user is not None:
        user.applied_promo_code = normalized
        user.applied_discount_percentage = discount_percentage
        user.applied_promo_plan = _plan_value(plan)
        user.promo_code_applied_at = current
    await db.flush()
    return usage


async def redeem_promo_code(
    db: AsyncSession,
    *,
    raw_code: str,
    user: User,
    plan: Plan | str,
    now: datetime | None = None,
) -> tuple[PromoCode, PromoCodeUsage]:
    """Validate then apply inside the caller's transaction."""
    current = now or datetime.now(UTC)
    user_id = user.id
    validation = await validate_promo_code(db, raw_code, user_id, plan, now=current)
    if not validation.valid or validation.promo_code is None:
        raise PromoCodeRejected(validation.error, validation.message)

    promo_code = validation.promo_code
    usage = await apply_promo_code(
        db,
        promo_code_id=promo_code.id,
        user_id=user_id,
        user_name=user.display_name,
        user_email=user.email,
        code=promo_code.code,
        discount_percentage=promo_code.discount_percentage,
        plan=plan,
        now=current,
    )
    await db.refresh(promo_code)
    await notify_admins_of_redemption(
        db,
        user_name=usage.user_name,
        user_email=usage.user_email,
        code=usage.promo_code,
        discount_percentage=usage.discount_percentage,
        plan=usage.plan,
    )
    logger.info("Promo code %s redeemed by %s for %s", promo_code.code, user_id, usage.plan)
    return promo_code, usage


def redeemed_discount_for(user: User, plan: Plan | str) -> tuple[int, str | None]:
    """Discount the user still holds for ``plan``, as (percentage, code).

    A redemption only prices the plan it was validated for, and only until a
    successful payment consumes it.
    """
    if not user.applied_discount_percentage or user.applied_promo_plan != _plan_value(plan):
        return 0, None
    return user.applied_discount_percentage, user.applied_promo_code


def consume_redeemed_discount(user: User) -> None:
    # The code and timestamp stay as the record of the last redemption.
    user.applied_discount_percentage = None
    user.applied_promo_plan = None


# --- Admin management ---


async def _ensure_code_available(
    db: AsyncSession,
    code: str,
    *,
    exclude_id: uuid.UUID | None = None,
) -> None:
    query = select(PromoCode.id).where(PromoCode.code == code)
    if exclude_id is not None:
        query = query.where(PromoCode.id != exclude_id)
    existing = await db.execute(query)
    if existing.scalars().first() is not None:
        raise PromoCodeConflictError("Promo code already exists")


def _normalize_plans(plans: list[Plan | str] | None) -> list[str]:
    normalized: list[str] = []
    for plan in plans or []:
        value = _plan_value(plan)
        if value not in normalized:
            normalized.append(value)
    return normalized


async def create_promo_code(
    db: AsyncSession,
    *,
    code: str,
    discount_percentage: int,
    description: str | None = None,
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
    usage_limit: int | None = None,
    applicable_plans: list[Plan | str] | None = None,
    is_active: bool = True,
    created_by: str | None = None,
) -> PromoCode:
    normalized = normalize_promo_code(code)
    await _ensure_code_available(db, normalized)

    now = datetime.now(UTC)
    promo_code = PromoCode(
        code=normalized,
        description=description,
        discount_percentage=discount_percentage,
        valid_from=as_utc(valid_from),
        valid_until=as_utc(valid_until),
        usage_limit=usage_limit,
        usage_count=0,
        applicable_plans=_normalize_plans(applicable_plans),
        is_active=is_active,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(promo_code)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise PromoCodeConflictError("Promo code already exists")
    return promo_code


_UPDATABLE_FIELDS = (
    "code",
    "description",
    "discount_percentage",
    "valid_from",
    "valid_until",
    "usage_limit",
    "applicable_plans",
    "is_active",
)


async def update_promo_code(
    db: AsyncSession,
    promo_code_id: uuid.UUID,
    changes: dict[str, Any],
) -> PromoCode:
    """Apply admin edits. ``usage_count`` is never writable here."""
    promo_code = await get_promo_code_by_id(db, promo_code_id)
    valid_from = as_utc(changes.get("valid_from", promo_code.valid_from))
    valid_until = as_utc(changes.get("valid_until", promo_code.valid_until))
    if valid_from and valid_until and valid_until <= valid_from:
        raise PromoCodeWindowError("valid_until must be after valid_from")

    for field in _UPDATABLE_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if field == "code":
            value = normalize_promo_code(value)
            if value != promo_code.code:
                await _ensure_code_available(db, value, exclude_id=promo_code.id)
        elif field in {"valid_from", "valid_until"}:
            value = as_utc(value)
        elif field == "applicable_plans":
            value = _normalize_plans(value)
        setattr(promo_code, field, value)
    promo_code.updated_at = datetime.now(UTC)
    await db.flush()
    return promo_code


async def set_promo_code_status(
    db: AsyncSession,
    promo_code_id: uuid.UUID,
    *,
    is_active: bool,
) -> PromoCode:
    promo_code = await get_promo_code_by_id(db, promo_code_id)
    promo_code.is_active = is_active
    promo_code.updated_at = datetime.now(UTC)
    await db.flush()
    return promo_code


async def soft_delete_promo_code(db: AsyncSession, promo_code_id: uuid.UUID) -> PromoCode:
    return await set_promo_code_status(db, promo_code_id, is_active=False)


async def permanently_delete_promo_code(db: AsyncSession, promo_code_id: uuid.UUID) -> str:
    """Hard delete; receipts keep their denormalized code string."""
    promo_code = await get_promo_code_by_id(db, promo_code_id)
    code = promo_code.code
    await db.delete(promo_code)
    await db.flush()
    return code
