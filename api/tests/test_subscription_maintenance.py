"""Tests for the expiry sweep and renewal reminders."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from api.services.subscription_maintenance import (
    expire_lapsed_subscriptions,
    run_subscription_maintenance,
    send_expiry_reminders,
)
from conftest import make_user
from fluentdesk.models import Notification, Subscription
from sqlalchemy import func, select

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


def _subscription(user_id: str, status: str, end_date: datetime) -> Subscription:
    return Subscription(
        user_id=user_id,
        plan="basic",
        status=status,
        start_date=end_date - timedelta(days=30),
        end_date=end_date,
        billing_interval_months=1,
        cancel_at_period_end=status == "canceled",
        created_at=end_date - timedelta(days=30),
        updated_at=end_date - timedelta(days=30),
    )


async def _statuses(db) -> dict[str, str]:
    result = await db.execute(
        select(Subscription.user_id, Subscription.status).execution_options(populate_existing=True)
    )
    return dict(result.all())


async def _notification_count(db, title: str) -> int:
    return await db.scalar(
        select(func.count()).select_from(Notification).where(Notification.title == title)
    )


@pytest.fixture
def mock_email():
    with patch(
        "api.services.subscription_maintenance.send_templated_email",
        new=AsyncMock(return_value=True),
    ) as mock_send:
        yield mock_send


class TestExpireLapsedSubscriptions:
    async def test_expires_only_ended_periods(self, db, mock_email):
        db.add_all(
            [
                make_user("lapsed-active"),
                make_user("lapsed-canceled"),
                make_user("lapsed-past-due", email_notifications=False),
                make_user("current"),
                _subscription("lapsed-active", "active", NOW - timedelta(days=1)),
                _subscription("lapsed-canceled", "canceled", NOW - timedelta(minutes=5)),
                _subscription("lapsed-past-due", "past_due", NOW - timedelta(days=3)),
                _subscription("current", "active", NOW + timedelta(days=10)),
            ]
        )
        await db.commit()

        summary = await expire_lapsed_subscriptions(db, now=NOW)
        await db.commit()

        assert summary["expired"] == 3
        assert await _statuses(db) == {
            "lapsed-active": "expired",
            "lapsed-canceled": "expired",
            "lapsed-past-due": "expired",
            "current": "active",
        }
        assert await _notification_count(db, "Subscription Expired") == 3
        assert mock_email.await_count == 2
        assert {c.args[1] for c in mock_email.await_args_list} == {"subscription_expired"}

    async def test_second_sweep_is_a_no_op(self, db, mock_email):
        db.add_all([make_user("lapsed"), _subscription("lapsed", "active", NOW - timedelta(days=1))])
        await db.commit()

        await expire_lapsed_subscriptions(db, now=NOW)
        await db.commit()
        summary = await expire_lapsed_subscriptions(db, now=NOW + timedelta(hours=1))
        await db.commit()

        assert summary["expired"] == 0
        assert await _notification_count(db, "Subscription Expired") == 1
        assert mock_email.await_count == 1


class TestExpiryReminders:
    async def test_reminds_inside_window_once(self, db, mock_email):
        db.add_all(
            [
                make_user("soon"),
                make_user("later"),
                make_user("canceled"),
                _subscription("soon", "active", NOW + timedelta(days=3)),
                _subscription("later", "active", NOW + timedelta(days=20)),
                _subscription("canceled", "canceled", NOW + timedelta(days=2)),
            ]
        )
        await db.commit()

        first = await send_expiry_reminders(db, now=NOW)
        await db.commit()
        second = await send_expiry_reminders(db, now=NOW + timedelta(hours=6))
        await db.commit()

        assert first == {"reminded": 1, "window_days": 7}
        assert second["reminded"] == 0
        assert await _notification_count(db, "Subscription Expiring Soon") == 1
        mock_email.assert_awaited_once()
        assert mock_email.await_args.args[1] == "subscription_expiring"
        assert mock_email.await_args.args[2]["days_left"] == 3

    async def test_window_follows_settings(self, db, mock_email, monkeypatch):
        from fluentdesk.config import reset_settings_cache

        monkeypatch.setenv("SUBSCRIPTION_REMINDER_DAYS", "30")
        reset_settings_cache()
        db.add_all([make_user("later"), _subscription("later", "active", NOW + timedelta(days=20))])
        await db.commit()

        summary = await send_expiry_reminders(db, now=NOW)

        assert summary == {"reminded": 1, "window_days": 30}


async def test_run_subscription_maintenance_combines_summaries(db, mock_email):
    db.add_all(
        [
            make_user("lapsed"),
            make_user("soon"),
            _subscription("lapsed", "active", NOW - timedelta(days=1)),
            _subscription("soon", "active", NOW + timedelta(days=1)),
        ]
    )
    await db.commit()

    summary = await run_subscription_maintenance(db, trigger="admin", now=NOW)

    assert summary["trigger"] == "admin"
    assert summary["expired"] == 1
    assert summary["reminded"] == 1
    assert summary["checked_at"] == NOW.isoformat()
