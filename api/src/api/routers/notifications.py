"""Current user's in-app notifications."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException
from fluentdesk.models import User
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_user, get_db
from api.services.notification_service import (
    list_notifications,
    mark_all_read,
    serialize_notification,
    set_notification_read,
)

router = APIRouter()


class NotificationUpdateRequest(BaseModel):
    read: bool


@router.get("/")
async def get_notifications(
    unread_only: bool = False,
    limit: int = 50,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    items = await list_notifications(
        db,
        user.id,
        unread_only=unread_only,
        limit=max(1, min(limit, 200)),
    )
    return [serialize_notification(item) for item in items]


@router.patch("/{notification_id}")
async def update_notification(
    notification_id: uuid.UUID,
    req: NotificationUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notification = await set_notification_read(db, notification_id, user.id, read=req.read)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return serialize_notification(notification)


@router.post("/read-all")
async def read_all_notifications(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    updated = await mark_all_read(db, user.id)
    return {"updated": updated}
