"""Payment provider configuration stored in site_settings.

Admin-saved values win; anything left blank falls back to the environment.
Secrets are stored Fernet-encrypted and only ever returned masked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from fluentdesk.config import get_settings
from fluentdesk.models import SiteSetting
from fluentdesk.schemas.billing import Plan
from fluentdesk.services.encryption import decrypt_secret, encrypt_secret, mask_secret
from sqlalchemy.ext.asyncio import AsyncSession

BILLING_CONFIG_KEY = "billing.provider"
SUPPORTED_PROVIDERS = ("paddle", "stripe")
PADDLE_ENVIRONMENTS = ("sandbox", "production")

_SECRET_FIELDS = ("stripe_secret_key", "stripe_webhook_secret", "paddle_webhook_secret")
_PLAIN_FIELDS = ("stripe_publishable_key", "paddle_client_token")


@dataclass
class BillingRuntimeConfig:
    provider: str
    test_mode: bool
    paddle_environment: str = "sandbox"
    paddle_client_token: str = ""
    paddle_webhook_secret: str = ""
    stripe_publishable_key: str = ""
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    price_ids: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def is_configured(self) -> bool:
        if self.provider == "stripe":
            return bool(self.stripe_secret_key and self.stripe_publishable_key)
        return bool(self.paddle_client_token)

    def webhook_secret_for(self, provider: str) -> str:
        if provider == "stripe":
            return self.stripe_webhook_secret
        return self.paddle_webhook_secret

    def price_id_for(self, plan: Plan) -> str:
        return self.price_ids.get(self.provider, {}).get(plan.value, "")

    @property
    def allows_test_activation(self) -> bool:
        return self.test_mode or not self.is_configured


def _normalize_text(value: Any) -> str:
    return str(value or "").strip()


def _coerce_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _env_defaults() -> BillingRuntimeConfig:
    settings = get_settings()
    provider = _normalize_text(settings.payment_provider).lower()
    return BillingRuntimeConfig(
        provider=provider if provider in SUPPORTED_PROVIDERS else "paddle",
        test_mode=settings.payment_test_mode,
        paddle_environment=settings.paddle_environment,
        paddle_client_token=_normalize_text(settings.paddle_client_token),
        paddle_webhook_secret=_normalize_text(settings.paddle_webhook_secret),
        stripe_publishable_key=_normalize_text(settings.stripe_publishable_key),
        stripe_secret_key=_normalize_text(settings.stripe_secret_key),
        stripe_webhook_secret=_normalize_text(settings.stripe_webhook_secret),
        price_ids={
            "paddle": {
                Plan.BASIC.value: settings.paddle_price_basic,
                Plan.PREMIUM.value: settings.paddle_price_premium,
                Plan.ENTERPRISE.value: settings.paddle_price_enterprise,
            },
            "stripe": {
                Plan.BASIC.value: settings.stripe_price_basic,
                Plan.PREMIUM.value: settings.stripe_price_premium,
                Plan.ENTERPRISE.value: settings.stripe_price_enterprise,
            },
        },
    )


def _stored(row: SiteSetting | None) -> dict[str, Any]:
    return row.value if row is not None and isinstance(row.value, dict) else {}


async def resolve_billing_config(session: AsyncSession) -> BillingRuntimeConfig:
    config = _env_defaults()
    row = await session.get(SiteSetting, BILLING_CONFIG_KEY)
    stored = _stored(row)
    if not stored:
        return config

    provider = _normalize_text(stored.get("provider")).lower()
    if provider in SUPPORTED_PROVIDERS:
        config.provider = provider
    if "test_mode" in stored:
        config.test_mode = _coerce_bool(stored.get("test_mode"), config.test_mode)
    environment = _normalize_text(stored.get("paddle_environment")).lower()
    if environment in PADDLE_ENVIRONMENTS:
        config.paddle_environment = environment
    for name in _PLAIN_FIELDS:
        value = _normalize_text(stored.get(name))
        if value:
            setattr(config, name, value)
    for name in _SECRET_FIELDS:
        value = decrypt_secret(_normalize_text(stored.get(f"{name}_encrypted")))
        if value:
            setattr(config, name, value)
    for provider_name, prices in (stored.get("price_ids") or {}).items():
        if provider_name not in config.price_ids or not isinstance(prices, dict):
            continue
        for plan_name, price_id in prices.items():
            if plan_name in config.price_ids[provider_name] and _normalize_text(price_id):
                config.price_ids[provider_name][plan_name] = _normalize_text(price_id)
    return config


def _admin_payload(
    config: BillingRuntimeConfig,
    *,
    updated_at: datetime | None,
    using_env_defaults: bool,
) -> dict[str, Any]:
    return {
        "provider": config.provider,
        "test_mode": config.test_mode,
        "paddle_environment": config.paddle_environment,
        "paddle_client_token": config.paddle_client_token,
        "paddle_webhook_secret_masked": mask_secret(config.paddle_webhook_secret),
        "stripe_publishable_key": config.stripe_publishable_key,
        "stripe_secret_key_masked": mask_secret(config.stripe_secret_key),
        "stripe_webhook_secret_masked": mask_secret(config.stripe_webhook_secret),
        "price_ids": config.price_ids,
        "is_configured": config.is_configured,
        "webhook_is_configured": bool(config.webhook_secret_for(config.provider)),
        "using_env_defaults": using_env_defaults,
        "updated_at": updated_at.isoformat() if updated_at else None,
    }


async def load_billing_config(session: AsyncSession) -> dict[str, Any]:
    row = await session.get(SiteSetting, BILLING_CONFIG_KEY)
    config = await resolve_billing_config(session)
    return _admin_payload(
        config,
        updated_at=row.updated_at if row else None,
        using_env_defaults=row is None,
    )


async def save_billing_config(session: AsyncSession, payload: dict[str, Any]) -> dict[str, Any]:
    row = await session.get(SiteSetting, BILLING_CONFIG_KEY)
    merged = dict(_stored(row))

    if "provider" in payload:
        provider = _normalize_text(payload.get("provider")).lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported payment provider: {provider}")
        merged["provider"] = provider
    if "test_mode" in payload:
        merged["test_mode"] = _coerce_bool(payload.get("test_mode"), False)
    if "paddle_environment" in payload:
        environment = _normalize_text(payload.get("paddle_environment")).lower()
        if environment not in PADDLE_ENVIRONMENTS:
            raise ValueError(f"Unsupported Paddle environment: {environment}")
        merged["paddle_environment"] = environment
    for name in _PLAIN_FIELDS:
        if name in payload:
            merged[name] = _normalize_text(payload.get(name))
    for name in _SECRET_FIELDS:
        if name in payload:
            merged[f"{name}_encrypted"] = encrypt_secret(_normalize_text(payload.get(name)))
    if isinstance(payload.get("price_ids"), dict):
        prices = dict(merged.get("price_ids") or {})
        for provider_name, plan_prices in payload["price_ids"].items():
            if provider_name in SUPPORTED_PROVIDERS and isinstance(plan_prices, dict):
                prices[provider_name] = {
                    **(prices.get(provider_name) or {}),
                    **{str(k): _normalize_text(v) for k, v in plan_prices.items()},
                }
        merged["price_ids"] = prices

    now = datetime.now(UTC)
    if row is None:
        row = SiteSetting(
            key=BILLING_CONFIG_KEY,
            value=merged,
            category="billing",
            description="Payment provider credentials and test-mode toggle.",
            updated_at=now,
        )
        session.add(row)
    else:
        row.value = merged
        row.category = "billing"
        row.updated_at = now

    await session.flush()
    config = await resolve_billing_config(session)
    return _admin_payload(config, updated_at=now, using_env_defaults=False)
