"""SQLAlchemy ORM models for Fluentdesk billing."""

from fluentdesk.models.base import Base
from fluentdesk.models.user import User
from fluentdesk.models.promo_code import PromoCode
from fluentdesk.models.promo_code_usage import PromoCodeUsage
from fluentdesk.models.subscription import Subscription
from fluentdesk.models.payment_history import PaymentHistory
from fluentdesk.models.notification import Notification
from fluentdesk.models.webhook_event import WebhookEvent
from fluentdesk.models.audit_log import AuditLog
from fluentdesk.models.site_setting import SiteSetting

__all__ = [
    "Base",
    "User",
    "PromoCode",
    "PromoCodeUsage",
    "Subscription",
    "PaymentHistory",
    "Notification",
    "WebhookEvent",
    "AuditLog",
    "SiteSetting",
]
