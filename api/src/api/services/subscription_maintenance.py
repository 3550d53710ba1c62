"""Time-driven subscription upkeep: expiry sweep and renewal reminders."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fluentdesk.config import get_settings
from fluentdesk.database import get_session
from fluentdesk.models import Subscription, User
from fluentdesk.schemas.billing import SubscriptionStatus
from fluentdesk.services.timestamps import as_utc
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.email_service import send_templated_email
from api.services.notification_service import create_notification
from api.services.subscription_state import EXPIRY_TRIGGER, InvalidTransitionError, transition

logger = logging.getLogger(__name__)

_EXPIRABLE = [
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.CANCELED.value,
]


async def expire_lapsed_subscriptions(
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Move every subscription whose period has ended to ``expired``."""
    current = now or datetime.now(UTC)
    result = await db.execute(
        select(Subscription, User)
        .join(User, User.id == Subscription.user_id)
        .where(
            Subscription.status.in_(_EXPIRABLE),
            Subscription.end_date.is_not(None),
            Subscription.end_date < current,
        )
        .with_for_update(of=Subscription)
    )
    expired = 0
    for subscription, user in result.all():
        try:
            change = transition(subscription.status, EXPIRY_TRIGGER)
        except InvalidTransitionError as exc:
            logger.warning("Skipping expiry for subscription %s: %s", subscription.id, exc)
            continue
        subscription.status = change.status.value
        subscription.updated_at = current
        expired += 1

        end_label = as_utc(subscription.end_date).date().isoformat()
        await create_notification(
            db,
            recipient_id=user.id,
            type="subscription",
            title="Subscription Expired",
            body=f"Your {subscription.plan.capitalize()} subscription expired on {end_label}.",
            action_url="/pricing",
            dedupe_key=f"expired_{subscription.id}_{end_label}",
            now=current,
        )
        if user.email_notifications:
            await send_templated_email(
                user.email,
                "subscription_expired",
                {
                    "name": user.display_name,
                    "plan": subscription.plan.capitalize(),
                    "end_date": end_label,
                },
            )
    await db.flush()
    if expired:
        logger.info("Expired %d lapsed subscription(s)", expired)
    return {"expired": expired, "checked_at": current.isoformat()}


async def send_expiry_reminders(
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Warn active subscribers whose period ends within the reminder window.

    One reminder per billing period; the notification dedupe key keeps
    repeated sweeps quiet.
    """
    current = now or datetime.now(UTC)
    days = max(1, get_settings().subscription_reminder_days)
    horizon = current + timedelta(days=days)
    result = await db.execute(
        select(Subscription, User)
        .join(User, User.id == Subscription.user_id)
        .where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.end_date.is_not(None),
            Subscription.end_date >= current,
            Subscription.end_date <= horizon,
        )
    )
    reminded = 0
    for subscription, user in result.all():
        end_date = as_utc(subscription.end_date)
        end_label = end_date.date().isoformat()
        days_left = max(0, (end_date - current).days)
        notification = await create_notification(
            db,
            recipient_id=user.id,
            type="subscription",
            title="Subscription Expiring Soon",
            body=f"Your {subscription.plan.capitalize()} subscription ends on {end_label}.",
            action_url="/pricing",
            data={"days_left": days_left},
            dedupe_key=f"expiring_{subscription.id}_{end_label}",
            now=current,
        )
        if notification is None:
            continue
        reminded += 1
        if user.email_notifications:
            await send_templated_email(
                user.email,
                "subscription_expiring",
                {
                    "name": user.display_name,
                    "plan": subscription.plan.capitalize(),
                    "end_date": end_label,
                    "days_left": days_left,
                },
            )
    await db.flush()
    return {"reminded": reminded, "window_days": days}


async def run_subscription_maintenance(
    db: AsyncSession,
    *,
    trigger: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    current = now or datetime.now(UTC)
    expiry = await expire_lapsed_subscriptions(db, now=current)
    reminders = await send_expiry_reminders(db, now=current)
    summary = {"trigger": trigger, **expiry, **reminders}
    logger.info("Subscription maintenance (%s): %s", trigger, summary)
    return summary


async def run_maintenance_worker(
    stop_event: asyncio.Event,
    *,
    interval_seconds: float | None = None,
) -> None:
    settings = get_settings()
    poll_interval = interval_seconds or max(1, settings.maintenance_interval_minutes) * 60.0

    logger.info("Maintenance worker started")
    try:
        while not stop_event.is_set():
            try:
                async with get_session() as db:
                    await run_subscription_maintenance(db, trigger="scheduled")
            except Exception:
                logger.exception("Scheduled subscription maintenance failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
            except TimeoutError:
                pass
    finally:
        logger.info("Maintenance worker stopped")
