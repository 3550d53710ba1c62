"""FastAPI application factory."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from pathlib import Path

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fluentdesk.config import get_settings
from fluentdesk.database import close_engine, get_engine
from sqlalchemy import text

from api.middleware.rate_limit import RateLimitMiddleware
from api.routers import (
    admin_billing,
    admin_promo_codes,
    health,
    notifications,
    payment_webhooks,
    promo_codes,
    user_subscription,
)
from api.services.subscription_maintenance import run_maintenance_worker

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[3]


def _migration_heads() -> set[str]:
    alembic_ini = REPO_ROOT / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found; skipping migration revision check")
        return set()
    alembic_cfg = AlembicConfig(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(REPO_ROOT / "alembic"))
    return set(ScriptDirectory.from_config(alembic_cfg).get_heads())


async def _applied_revisions() -> set[str]:
    async with get_engine().connect() as connection:
        rows = await connection.execute(text("SELECT version_num FROM alembic_version"))
        return {str(value) for value in rows.scalars() if value}


async def _check_schema_revision() -> None:
    """Refuse to start against a database that is behind the migration scripts."""
    if get_settings().skip_migration_check:
        return
    heads = _migration_heads()
    if not heads:
        return
    try:
        applied = await _applied_revisions()
    except Exception as exc:
        raise RuntimeError(
            "Could not read alembic_version; run `alembic upgrade head` first."
        ) from exc
    if applied != heads:
        raise RuntimeError(
            f"Schema is at {sorted(applied)} but migrations end at {sorted(heads)}; "
            "run `alembic upgrade head`."
        )


async def _stop_worker(task: asyncio.Task, stop_event: asyncio.Event) -> None:
    stop_event.set()
    try:
        await asyncio.wait_for(task, timeout=5)
    except Exception:
        task.cancel()
        with suppress(Exception):
            await task


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    stop_event = asyncio.Event()
    maintenance_task: asyncio.Task | None = None
    try:
        await _check_schema_revision()
        if get_settings().maintenance_worker_enabled:
            maintenance_task = asyncio.create_task(run_maintenance_worker(stop_event))
        yield
    finally:
        if maintenance_task is not None:
            await _stop_worker(maintenance_task, stop_event)
        redis_client = getattr(app.state, "_rate_limit_redis", None)
        if redis_client is not None:
            await redis_client.aclose()
        await close_engine()


def _warn_insecure_defaults() -> None:
    settings = get_settings()
    if settings.secret_key == "change-me-in-production":
        logger.warning("SECRET_KEY uses insecure default value")
    if not settings.encryption_key:
        logger.warning("ENCRYPTION_KEY is empty; stored provider secrets cannot be saved")
    if settings.payment_test_mode:
        logger.warning("PAYMENT_TEST_MODE is on; subscriptions can be activated without payment")


def create_app() -> FastAPI:
    app = FastAPI(title="Fluentdesk Billing API", version="0.1.0", lifespan=lifespan)
    settings = get_settings()
    _warn_insecure_defaults()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.site_url, settings.admin_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RateLimitMiddleware)
    app.include_router(health.router, tags=["health"])
    app.include_router(promo_codes.router, prefix="/v1/promo-codes", tags=["promo-codes"])
    app.include_router(
        user_subscription.router,
        prefix="/v1/user/subscription",
        tags=["user-subscription"],
    )
    app.include_router(
        notifications.router,
        prefix="/v1/user/notifications",
        tags=["notifications"],
    )
    app.include_router(payment_webhooks.router, prefix="/v1/webhooks", tags=["webhooks"])
    app.include_router(admin_promo_codes.router, prefix="/admin/promo-codes", tags=["admin"])
    app.include_router(admin_billing.router, prefix="/admin/billing", tags=["admin"])
    return app


app = create_app()
