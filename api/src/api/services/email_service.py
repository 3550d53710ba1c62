"""Templated transactional email over SMTP.

Delivery is best-effort: failures are logged and reported as ``False`` so a
billing transition never fails because a mail server is down.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from collections import defaultdict
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any

from fluentdesk.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    body: str


EMAIL_TEMPLATES: dict[str, EmailTemplate] = {
    "payment_succeeded": EmailTemplate(
        subject="Your {plan} subscription is active",
        body=(
            "Hi {name},\n\n"
            "We received your payment of {amount} {currency}. Your {plan} subscription "
            "is active until {end_date}.\n\n"
            "Manage your subscription: {site_url}/settings/subscription\n"
        ),
    ),
    "payment_failed": EmailTemplate(
        subject="Your payment failed",
        body=(
            "Hi {name},\n\n"
            "We could not process the payment for your {plan} subscription. "
            "Please update your payment method to keep access.\n\n"
            "{site_url}/settings/subscription\n"
        ),
    ),
    "subscription_canceled": EmailTemplate(
        subject="Your subscription was canceled",
        body=(
            "Hi {name},\n\n"
            "Your {plan} subscription was canceled. You keep access until {end_date}.\n"
        ),
    ),
    "subscription_expiring": EmailTemplate(
        subject="Your subscription expires in {days_left} days",
        body=(
            "Hi {name},\n\n"
            "Your {plan} subscription ends on {end_date}. Renew to keep your classes "
            "and progress available.\n\n"
            "{site_url}/pricing\n"
        ),
    ),
    "subscription_expired": EmailTemplate(
        subject="Your subscription has expired",
        body=(
            "Hi {name},\n\n"
            "Your {plan} subscription expired on {end_date}. You can renew at any time.\n\n"
            "{site_url}/pricing\n"
        ),
    ),
}


def render_template(template_id: str, data: dict[str, Any]) -> tuple[str, str]:
    """Render subject and body; missing placeholders render empty."""
    template = EMAIL_TEMPLATES[template_id]
    values: defaultdict[str, Any] = defaultdict(str, data)
    values.setdefault("site_url", get_settings().site_url.rstrip("/"))
    if not values["name"]:
        values["name"] = "there"
    return template.subject.format_map(values), template.body.format_map(values)


def smtp_is_configured(settings: Settings) -> bool:
    return bool(settings.smtp_host.strip() and settings.smtp_from_email.strip())


def _build_sender(from_email: str, from_name: str) -> str:
    if not from_name:
        return from_email
    return f"{from_name} <{from_email}>"


def _send_email_sync(
    settings: Settings,
    *,
    to_email: str,
    subject: str,
    text_body: str,
) -> None:
    message = EmailMessage()
    message["From"] = _build_sender(settings.smtp_from_email, settings.smtp_from_name)
    message["To"] = to_email
    message["Subject"] = subject
    message.set_content(text_body)

    if settings.smtp_use_ssl:
        smtp_client: smtplib.SMTP = smtplib.SMTP_SSL(
            host=settings.smtp_host, port=settings.smtp_port, timeout=15
        )
    else:
        smtp_client = smtplib.SMTP(host=settings.smtp_host, port=settings.smtp_port, timeout=15)

    with smtp_client as smtp:
        smtp.ehlo()
        if settings.smtp_use_starttls and not settings.smtp_use_ssl:
            smtp.starttls()
            smtp.ehlo()
        if settings.smtp_username:
            smtp.login(settings.smtp_username, settings.smtp_password)
        smtp.send_message(message)


async def send_templated_email(
    to_email: str | None,
    template_id: str,
    data: dict[str, Any],
) -> bool:
    settings = get_settings()
    if not to_email:
        return False
    if not settings.smtp_enabled:
        logger.info("SMTP is disabled; skipping %s email", template_id)
        return False
    if not smtp_is_configured(settings):
        logger.warning("SMTP is enabled but not fully configured; skipping %s email", template_id)
        return False

    try:
        subject, body = render_template(template_id, data)
        await asyncio.to_thread(
            _send_email_sync,
            settings,
            to_email=to_email.strip().lower(),
            subject=subject,
            text_body=body,
        )
        return True
    except Exception:
        logger.exception("Failed sending %s email to %s", template_id, to_email)
        return False
