"""Pydantic schemas and enums shared by the billing workflows."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class Plan(str, Enum):
    """Subscription tier."""

    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    """Local subscription state."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class PromoCodeError(str, Enum):
    """Reason a promo code cannot be redeemed, in check order."""

    NOT_FOUND = "NotFound"
    INACTIVE = "Inactive"
    NOT_YET_VALID = "NotYetValid"
    EXPIRED = "Expired"
    LIMIT_REACHED = "LimitReached"
    ALREADY_USED = "AlreadyUsed"
    PLAN_NOT_APPLICABLE = "PlanNotApplicable"


class PaymentEventType(str, Enum):
    """Provider-agnostic payment lifecycle facts."""

    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class PaymentEvent(BaseModel):
    """A webhook event after the boundary layer has authenticated and parsed it."""

    provider: str
    event_id: str
    event_type: PaymentEventType
    provider_event_type: str
    occurred_at: datetime
    user_id: str | None = None
    plan: Plan | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    transaction_id: str | None = None
    amount_total: Decimal | None = None
    currency: str | None = None
    provider_status: str | None = None
    discount_percentage: int | None = Field(default=None, ge=0, le=100)
    promo_code: str | None = None
    receipt_url: str | None = None


class PriceQuote(BaseModel):
    """Final price for a plan after an optional percentage discount."""

    plan: Plan
    currency: str
    original_price: Decimal
    discount_percentage: int = 0
    discount_amount: Decimal
    final_price: Decimal
