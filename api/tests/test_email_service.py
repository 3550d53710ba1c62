"""Tests for templated transactional email."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fluentdesk.config import reset_settings_cache

from api.services.email_service import render_template, send_templated_email


@pytest.fixture
def smtp_env(monkeypatch):
    monkeypatch.setenv("SMTP_ENABLED", "true")
    monkeypatch.setenv("SMTP_HOST", "smtp.fluentdesk.test")
    monkeypatch.setenv("SMTP_FROM_EMAIL", "billing@fluentdesk.test")
    monkeypatch.setenv("SMTP_USERNAME", "mailer")
    monkeypatch.setenv("SMTP_PASSWORD", "secret")
    reset_settings_cache()


def test_render_template_fills_defaults():
    subject, body = render_template(
        "payment_succeeded",
        {"name": None, "plan": "Premium", "amount": "39.20", "currency": "USD", "end_date": "2026-04-15"},
    )
    assert subject == "Your Premium subscription is active"
    assert body.startswith("Hi there,")
    assert "39.20 USD" in body
    assert "https://app.fluentdesk.test/settings/subscription" in body


def test_render_template_tolerates_missing_fields():
    subject, body = render_template("subscription_expiring", {"plan": "Basic"})
    assert subject == "Your subscription expires in  days"
    assert "ends on ." in body


def test_render_template_unknown_id():
    with pytest.raises(KeyError):
        render_template("welcome", {})


@pytest.mark.asyncio
async def test_send_templated_email_skips_when_disabled():
    with patch("api.services.email_service._send_email_sync") as send_mock:
        delivered = await send_templated_email("qa@fluentdesk.test", "payment_failed", {"plan": "Basic"})
    assert delivered is False
    send_mock.assert_not_called()


@pytest.mark.asyncio
async def test_send_templated_email_skips_without_host(monkeypatch):
    monkeypatch.setenv("SMTP_ENABLED", "true")
    reset_settings_cache()
    with patch("api.services.email_service._send_email_sync") as send_mock:
        delivered = await send_templated_email("qa@fluentdesk.test", "payment_failed", {})
    assert delivered is False
    send_mock.assert_not_called()


@pytest.mark.asyncio
async def test_send_templated_email_uses_smtp(smtp_env):
    with patch("api.services.email_service._send_email_sync") as send_mock:
        delivered = await send_templated_email(
            " QA@Fluentdesk.test ",
            "subscription_expired",
            {"name": "Ana", "plan": "Premium", "end_date": "2026-03-14"},
        )
    assert delivered is True
    send_mock.assert_called_once()
    kwargs = send_mock.call_args.kwargs
    assert kwargs["to_email"] == "qa@fluentdesk.test"
    assert kwargs["subject"] == "Your subscription has expired"
    assert "expired on 2026-03-14" in kwargs["text_body"]


@pytest.mark.asyncio
async def test_send_templated_email_swallows_transport_errors(smtp_env):
    with patch(
        "api.services.email_service._send_email_sync",
        side_effect=OSError("connection refused"),
    ):
        delivered = await send_templated_email("qa@fluentdesk.test", "payment_failed", {})
    assert delivered is False


def test_send_email_sync_logs_in_and_sends(smtp_env):
    from fluentdesk.config import get_settings

    from api.services.email_service import _send_email_sync

    smtp_instance = MagicMock()
    smtp_instance.__enter__.return_value = smtp_instance
    with patch("api.services.email_service.smtplib.SMTP", return_value=smtp_instance) as smtp_cls:
        _send_email_sync(
            get_settings(),
            to_email="qa@fluentdesk.test",
            subject="Subject",
            text_body="Body",
        )
    smtp_cls.assert_called_once_with(host="smtp.fluentdesk.test", port=587, timeout=15)
    smtp_instance.starttls.assert_called_once()
    smtp_instance.login.assert_called_once_with("mailer", "secret")
    message = smtp_instance.send_message.call_args.args[0]
    assert message["From"] == "Fluentdesk <billing@fluentdesk.test>"
    assert message["To"] == "qa@fluentdesk.test"
