"""Plan catalog and discounted price quotes."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from fluentdesk.schemas.billing import Plan, PriceQuote

CURRENCY = "USD"
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class PlanDefinition:
    plan: Plan
    name: str
    price: Decimal
    features: tuple[str, ...] = field(default_factory=tuple)


PLAN_CATALOG: dict[Plan, PlanDefinition] = {
    Plan.BASIC: PlanDefinition(
        plan=Plan.BASIC,
        name="Basic",
        price=Decimal("29.00"),
        features=("Up to 3 classes", "Assignment tracking", "Email support"),
    ),
    Plan.PREMIUM: PlanDefinition(
        plan=Plan.PREMIUM,
        name="Premium",
        price=Decimal("49.00"),
        features=("Unlimited classes", "Speaking practice", "Progress analytics", "Priority support"),
    ),
    Plan.ENTERPRISE: PlanDefinition(
        plan=Plan.ENTERPRISE,
        name="Enterprise",
        price=Decimal("99.00"),
        features=("Everything in Premium", "Team management", "Dedicated success manager"),
    ),
}


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def quote_price(plan: Plan | str, discount_percentage: int | None = 0) -> PriceQuote:
    """Price ``plan`` after a whole-percent discount, rounded half-up to cents."""
    definition = PLAN_CATALOG[Plan(plan)]
    percent = int(discount_percentage or 0)
    if percent < 0 or percent > 100:
        raise ValueError("discount_percentage must be between 0 and 100")
    discount_amount = _money(definition.price * Decimal(percent) / Decimal(100))
    return PriceQuote(
        plan=definition.plan,
        currency=CURRENCY,
        original_price=_money(definition.price),
        discount_percentage=percent,
        discount_amount=discount_amount,
        final_price=_money(definition.price - discount_amount),
    )


def serialize_plan(definition: PlanDefinition) -> dict:
    return {
        "id": definition.plan.value,
        "name": definition.name,
        "price": str(definition.price),
        "currency": CURRENCY,
        "features": list(definition.features),
    }
