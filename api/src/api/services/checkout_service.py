"""Provider-neutral checkout start."""

from __future__ import annotations

from typing import Any

from fluentdesk.config import get_settings
from fluentdesk.models import User
from fluentdesk.schemas.billing import Plan

from api.services import stripe_service
from api.services.billing_config import BillingRuntimeConfig
from api.services.pricing import quote_price
from api.services.promo_code_service import redeemed_discount_for


def build_checkout(
    config: BillingRuntimeConfig,
    user: User,
    plan: Plan,
    *,
    success_url: str,
    cancel_url: str,
) -> dict[str, Any]:
    """Describe how the client should open checkout for ``plan``.

    A discount the user redeemed for this same plan is priced in and carried
    in the provider metadata so webhooks can stamp it on the subscription.
    """
    discount, promo_code = redeemed_discount_for(user, plan)
    quote = quote_price(plan, discount)
    price_id = config.price_id_for(plan)
    payload: dict[str, Any] = {
        "provider": config.provider,
        "quote": quote.model_dump(mode="json"),
    }

    if config.provider == "stripe":
        payload["url"] = stripe_service.create_checkout_session(
            secret_key=config.stripe_secret_key,
            user_id=user.id,
            email=user.email,
            quote=quote,
            price_id=price_id,
            interval_months=max(1, get_settings().billing_interval_months),
            promo_code=promo_code,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        return payload

    if not price_id:
        raise RuntimeError(f"No Paddle price configured for the {plan.value} plan")
    custom_data: dict[str, Any] = {
        "userId": user.id,
        "plan": plan.value,
        "discountPercentage": quote.discount_percentage,
    }
    if promo_code:
        custom_data["promoCode"] = promo_code
    payload.update(
        environment=config.paddle_environment,
        client_token=config.paddle_client_token,
        items=[{"priceId": price_id, "quantity": 1}],
        custom_data=custom_data,
        customer={"email": user.email},
        success_url=success_url,
    )
    return payload
