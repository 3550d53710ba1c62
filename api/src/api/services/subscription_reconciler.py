"""Apply normalized payment events to local subscription state.

Provider adapters turn webhooks into ``PaymentEvent`` values; everything
after that (dedupe, staleness, the status transition, the ledger row and the
user-facing side effects) happens here inside the caller's transaction.
"""

from __future__ import annotations

import calendar
import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from fluentdesk.config import get_settings
from fluentdesk.models import PaymentHistory, Subscription, User, WebhookEvent
from fluentdesk.schemas.billing import (
    PaymentEvent,
    PaymentEventType,
    Plan,
    SubscriptionStatus,
)
from fluentdesk.services.timestamps import as_utc
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.email_service import send_templated_email
from api.services.notification_service import create_notification
from api.services.pricing import quote_price
from api.services.promo_code_service import consume_redeemed_discount, redeemed_discount_for
from api.services.subscription_state import (
    InvalidTransitionError,
    Transition,
    UnknownProviderStatusError,
    transition,
)

logger = logging.getLogger(__name__)

MANUAL_PROVIDER = "manual"
SUBSCRIPTION_SETTINGS_URL = "/settings/subscription"

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate_ignored"
OUTCOME_DUPLICATE_TRANSACTION = "duplicate_transaction_ignored"
OUTCOME_UNATTRIBUTED = "ignored_missing_user_id"
OUTCOME_UNKNOWN_USER = "ignored_unknown_user"
OUTCOME_STALE = "ignored_stale"
OUTCOME_INVALID_TRANSITION = "ignored_invalid_transition"
OUTCOME_UNKNOWN_STATUS = "ignored_unknown_status"


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-aware month addition, clamping to the last day of the month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _format_date(value: datetime | None) -> str:
    return value.date().isoformat() if value else ""


async def register_webhook_event(
    db: AsyncSession,
    provider: str,
    event_id: str,
    event_type: str,
) -> WebhookEvent | None:
    """Persist the provider event id; return None if it was already processed."""
    existing = await db.execute(
        select(WebhookEvent.id).where(
            WebhookEvent.provider == provider,
            WebhookEvent.event_id == event_id,
        )
    )
    if existing.scalars().first() is not None:
        return None

    record = WebhookEvent(
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        received_at=datetime.now(UTC),
    )
    db.add(record)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        return None
    return record


async def _load_subscription(db: AsyncSession, user_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id).with_for_update()
    )
    return result.scalars().first()


async def _ledger_has(
    db: AsyncSession,
    provider: str,
    transaction_id: str,
    status: str,
) -> bool:
    result = await db.execute(
        select(PaymentHistory.id).where(
            PaymentHistory.provider == provider,
            PaymentHistory.provider_transaction_id == transaction_id,
            PaymentHistory.status == status,
        )
    )
    return result.scalars().first() is not None


async def reconcile_payment_event(
    db: AsyncSession,
    event: PaymentEvent,
    *,
    now: datetime | None = None,
) -> str:
    """Record and apply one event. Returns a short outcome label.

    Every outcome is a success from the provider's point of view: the
    event is remembered so redeliveries are no-ops.
    """
    record = await register_webhook_event(
        db, event.provider, event.event_id, event.provider_event_type
    )
    if record is None:
        logger.info("Duplicate %s webhook ignored: %s", event.provider, event.event_id)
        return OUTCOME_DUPLICATE

    outcome = await _apply_event(db, event, now or datetime.now(UTC))
    record.outcome = outcome
    await db.flush()
    logger.info(
        "%s webhook %s (%s) -> %s",
        event.provider,
        event.event_id,
        event.provider_event_type,
        outcome,
    )
    return outcome


async def _apply_event(db: AsyncSession, event: PaymentEvent, now: datetime) -> str:
    if not event.user_id:
        logger.warning(
            "%s event %s has no user id in its metadata; dropping",
            event.provider,
            event.event_id,
        )
        return OUTCOME_UNATTRIBUTED

    user = await db.get(User, event.user_id)
    if user is None:
        logger.warning("%s event %s references unknown user %s", event.provider, event.event_id, event.user_id)
        return OUTCOME_UNKNOWN_USER

    subscription = await _load_subscription(db, user.id)
    occurred_at = as_utc(event.occurred_at) or now
    last_event_at = as_utc(subscription.last_event_at) if subscription else None
    if last_event_at and occurred_at < last_event_at:
        logger.info(
            "Stale %s event %s for user %s ignored (occurred %s, last applied %s)",
            event.provider,
            event.event_id,
            user.id,
            occurred_at.isoformat(),
            last_event_at.isoformat(),
        )
        return OUTCOME_STALE

    if (
        event.event_type is PaymentEventType.PAYMENT_COMPLETED
        and event.transaction_id
        and await _ledger_has(db, event.provider, event.transaction_id, "succeeded")
    ):
        return OUTCOME_DUPLICATE_TRANSACTION

    current = SubscriptionStatus(subscription.status) if subscription else None
    try:
        change = transition(current, event.event_type, provider_status=event.provider_status)
    except UnknownProviderStatusError:
        logger.warning(
            "Ignoring %s event %s with unrecognized status %r",
            event.provider,
            event.event_id,
            event.provider_status,
        )
        return OUTCOME_UNKNOWN_STATUS
    except InvalidTransitionError as exc:
        logger.warning("Ignoring %s event %s: %s", event.provider, event.event_id, exc)
        return OUTCOME_INVALID_TRANSITION

    if event.event_type is PaymentEventType.PAYMENT_COMPLETED:
        await _complete_payment(db, user, subscription, event, change, now)
    elif event.event_type is PaymentEventType.PAYMENT_FAILED:
        await _fail_payment(db, user, subscription, event, change, now)
    elif event.event_type is PaymentEventType.SUBSCRIPTION_CANCELED:
        await _cancel_subscription(db, user, subscription, event, change, now)
    else:
        _sync_subscription(db, user, subscription, event, change, now)
    await db.flush()
    return OUTCOME_PROCESSED


def _stamp_provider_ids(subscription: Subscription, event: PaymentEvent) -> None:
    subscription.provider = event.provider
    if event.customer_id:
        subscription.provider_customer_id = event.customer_id
    if event.subscription_id:
        subscription.provider_subscription_id = event.subscription_id
    if event.transaction_id:
        subscription.provider_transaction_id = event.transaction_id


def _new_subscription(
    db: AsyncSession,
    user: User,
    event: PaymentEvent,
    status: SubscriptionStatus,
    now: datetime,
) -> Subscription:
    subscription = Subscription(
        user_id=user.id,
        plan=(event.plan or Plan.BASIC).value,
        status=status.value,
        billing_interval_months=max(1, get_settings().billing_interval_months),
        cancel_at_period_end=False,
        created_at=now,
        updated_at=now,
    )
    db.add(subscription)
    return subscription


async def _complete_payment(
    db: AsyncSession,
    user: User,
    subscription: Subscription | None,
    event: PaymentEvent,
    change: Transition,
    now: datetime,
) -> None:
    if subscription is None:
        subscription = _new_subscription(db, user, event, change.status, now)

    interval = max(1, int(subscription.billing_interval_months or 1))
    period_end = add_months(now, interval)
    current_end = as_utc(subscription.end_date)
    if change.starts_new_cycle:
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        current_end = None

    subscription.status = change.status.value
    if event.plan:
        subscription.plan = event.plan.value
    subscription.start_date = now
    subscription.end_date = period_end if current_end is None or period_end > current_end else current_end
    _stamp_provider_ids(subscription, event)

    discount, promo_code = event.discount_percentage, event.promo_code
    if discount is None:
        discount, promo_code = redeemed_discount_for(user, subscription.plan)
    if discount:
        subscription.discount_percentage = discount
        subscription.applied_promo_code = promo_code
        if promo_code and promo_code == user.applied_promo_code:
            consume_redeemed_discount(user)
    elif change.starts_new_cycle:
        subscription.discount_percentage = None
        subscription.applied_promo_code = None
    subscription.last_event_at = as_utc(event.occurred_at) or now
    subscription.updated_at = now

    transaction_id = event.transaction_id or f"{event.provider}_{event.event_id}"
    amount = event.amount_total
    if amount is None:
        amount = quote_price(subscription.plan, discount).final_price
    db.add(
        PaymentHistory(
            user_id=user.id,
            provider=event.provider,
            provider_transaction_id=transaction_id,
            provider_customer_id=event.customer_id,
            plan=subscription.plan,
            amount=amount,
            currency=(event.currency or "USD").upper(),
            status="succeeded",
            description=f"Subscription - {subscription.plan}",
            receipt_url=event.receipt_url,
            created_at=now,
        )
    )

    plan_label = subscription.plan.capitalize()
    await create_notification(
        db,
        recipient_id=user.id,
        type="subscription",
        title="Payment Successful",
        body=f"Your {plan_label} subscription is now active!",
        action_url=SUBSCRIPTION_SETTINGS_URL,
        data={"plan": subscription.plan, "transaction_id": transaction_id},
        dedupe_key=f"payment_{transaction_id}",
        now=now,
    )
    if user.email_notifications:
        await send_templated_email(
            user.email,
            "payment_succeeded",
            {
                "name": user.display_name,
                "plan": plan_label,
                "amount": f"{Decimal(amount):.2f}",
                "currency": (event.currency or "USD").upper(),
                "end_date": _format_date(subscription.end_date),
            },
        )
    logger.info(
        "Subscription for %s is %s on %s until %s",
        user.id,
        subscription.status,
        subscription.plan,
        _format_date(subscription.end_date),
    )


async def _fail_payment(
    db: AsyncSession,
    user: User,
    subscription: Subscription | None,
    event: PaymentEvent,
    change: Transition,
    now: datetime,
) -> None:
    if subscription is None:
        return
    subscription.status = change.status.value
    _stamp_provider_ids(subscription, event)
    subscription.last_event_at = as_utc(event.occurred_at) or now
    subscription.updated_at = now

    transaction_id = event.transaction_id or f"{event.provider}_{event.event_id}"
    if not await _ledger_has(db, event.provider, transaction_id, "failed"):
        db.add(
            PaymentHistory(
                user_id=user.id,
                provider=event.provider,
                provider_transaction_id=transaction_id,
                provider_customer_id=event.customer_id,
                plan=subscription.plan,
                amount=event.amount_total,
                currency=(event.currency or "USD").upper(),
                status="failed",
                description=f"Subscription - {subscription.plan}",
                created_at=now,
            )
        )

    await create_notification(
        db,
        recipient_id=user.id,
        type="subscription",
        title="Payment Failed",
        body="Your payment failed. Please update your payment method.",
        action_url=SUBSCRIPTION_SETTINGS_URL,
        data={"plan": subscription.plan, "transaction_id": transaction_id},
        dedupe_key=f"payment_failed_{transaction_id}",
        now=now,
    )
    if user.email_notifications:
        await send_templated_email(
            user.email,
            "payment_failed",
            {"name": user.display_name, "plan": subscription.plan.capitalize()},
        )


async def _cancel_subscription(
    db: AsyncSession,
    user: User,
    subscription: Subscription | None,
    event: PaymentEvent,
    change: Transition,
    now: datetime,
) -> None:
    if subscription is None:
        return
    subscription.status = change.status.value
    subscription.cancel_at_period_end = True
    subscription.canceled_at = now
    _stamp_provider_ids(subscription, event)
    subscription.last_event_at = as_utc(event.occurred_at) or now
    subscription.updated_at = now

    end_label = _format_date(as_utc(subscription.end_date))
    await create_notification(
        db,
        recipient_id=user.id,
        type="subscription",
        title="Subscription Canceled",
        body=f"Your subscription was canceled. Access continues until {end_label or 'the end of the period'}.",
        action_url=SUBSCRIPTION_SETTINGS_URL,
        dedupe_key=f"canceled_{subscription.id}_{event.event_id}",
        now=now,
    )
    if user.email_notifications:
        await send_templated_email(
            user.email,
            "subscription_canceled",
            {
                "name": user.display_name,
                "plan": subscription.plan.capitalize(),
                "end_date": end_label,
            },
        )


def _sync_subscription(
    db: AsyncSession,
    user: User,
    subscription: Subscription | None,
    event: PaymentEvent,
    change: Transition,
    now: datetime,
) -> None:
    """Creation and provider-side status updates: ids and status only."""
    if subscription is None:
        subscription = _new_subscription(db, user, event, change.status, now)
    subscription.status = change.status.value
    if change.status is SubscriptionStatus.CANCELED and subscription.canceled_at is None:
        subscription.canceled_at = now
        subscription.cancel_at_period_end = True
    _stamp_provider_ids(subscription, event)
    subscription.last_event_at = as_utc(event.occurred_at) or now
    subscription.updated_at = now


async def activate_without_payment(
    db: AsyncSession,
    user: User,
    plan: Plan,
    *,
    now: datetime | None = None,
) -> tuple[str, Subscription | None]:
    """Test-mode activation through the same transition as a real payment."""
    current = now or datetime.now(UTC)
    discount, promo_code = redeemed_discount_for(user, plan)
    quote = quote_price(plan, discount)
    reference = f"{MANUAL_PROVIDER}_{uuid.uuid4().hex}"
    event = PaymentEvent(
        provider=MANUAL_PROVIDER,
        event_id=reference,
        event_type=PaymentEventType.PAYMENT_COMPLETED,
        provider_event_type="manual.activation",
        occurred_at=current,
        user_id=user.id,
        plan=plan,
        transaction_id=reference,
        amount_total=quote.final_price,
        currency=quote.currency,
        discount_percentage=quote.discount_percentage or None,
        promo_code=promo_code,
    )
    outcome = await reconcile_payment_event(db, event, now=current)
    subscription = await _load_subscription(db, user.id)
    logger.info("Test-mode activation for %s on %s -> %s", user.id, plan.value, outcome)
    return outcome, subscription
