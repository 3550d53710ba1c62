"""In-app notifications for students and admins."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from fluentdesk.models import Notification, User
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {"assignment", "grade", "message", "system", "subscription"}


async def create_notification(
    db: AsyncSession,
    *,
    recipient_id: str,
    type: str,
    title: str,
    body: str,
    action_url: str | None = None,
    data: dict[str, Any] | None = None,
    dedupe_key: str | None = None,
    now: datetime | None = None,
) -> Notification | None:
    """Insert a notification; returns None when ``dedupe_key`` was already used."""
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {type}")
    if dedupe_key:
        existing = await db.execute(
            select(Notification.id).where(Notification.dedupe_key == dedupe_key)
        )
        if existing.scalars().first() is not None:
            logger.debug("Notification %s already delivered", dedupe_key)
            return None

    notification = Notification(
        recipient_id=recipient_id,
        type=type,
        title=title,
        body=body,
        action_url=action_url,
        data=data,
        dedupe_key=dedupe_key,
        read=False,
        created_at=now or datetime.now(UTC),
    )
    db.add(notification)
    await db.flush()
    return notification


async def notify_admins(
    db: AsyncSession,
    *,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
) -> int:
    result = await db.execute(
        select(User.id).where(User.role == "admin", User.is_active.is_(True))
    )
    admin_ids = list(result.scalars().all())
    for admin_id in admin_ids:
        await create_notification(
            db,
            recipient_id=admin_id,
            type="system",
            title=title,
            body=body,
            data=data,
        )
    return len(admin_ids)


async def notify_admins_of_redemption(
    db: AsyncSession,
    *,
    user_name: str | None,
    user_email: str | None,
    code: str,
    discount_percentage: int,
    plan: str,
) -> int:
    who = user_name or user_email or "A student"
    return await notify_admins(
        db,
        title="Promo Code Used",
        body=f"{who} applied promo code {code} ({discount_percentage}% off) to the {plan} plan",
        data={
            "promo_code": code,
            "discount_percentage": discount_percentage,
            "plan": plan,
            "user_email": user_email,
        },
    )


async def list_notifications(
    db: AsyncSession,
    user_id: str,
    *,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    query = select(Notification).where(Notification.recipient_id == user_id)
    if unread_only:
        query = query.where(Notification.read.is_(False))
    query = query.order_by(Notification.created_at.desc()).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def set_notification_read(
    db: AsyncSession,
    notification_id: uuid.UUID,
    user_id: str,
    *,
    read: bool = True,
) -> Notification | None:
    notification = await db.get(Notification, notification_id)
    if notification is None or notification.recipient_id != user_id:
        return None
    notification.read = read
    await db.flush()
    return notification


async def mark_all_read(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        update(Notification)
        .where(Notification.recipient_id == user_id, Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def serialize_notification(notification: Notification) -> dict[str, Any]:
    return {
        "id": str(notification.id),
        "type": notification.type,
        "title": notification.title,
        "body": notification.body,
        "data": notification.data or {},
        "read": notification.read,
        "action_url": notification.action_url,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }
