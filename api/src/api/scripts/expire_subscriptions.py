"""Expire lapsed subscriptions and send renewal reminders.

Intended for cron: ``python -m api.scripts.expire_subscriptions``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from fluentdesk.database import close_engine, get_session_factory

from api.services.subscription_maintenance import (
    expire_lapsed_subscriptions,
    run_subscription_maintenance,
)


async def run(*, skip_reminders: bool) -> dict[str, Any]:
    factory = get_session_factory()
    now = datetime.now(UTC)
    try:
        async with factory() as db:
            if skip_reminders:
                summary = await expire_lapsed_subscriptions(db, now=now)
            else:
                summary = await run_subscription_maintenance(db, trigger="cli", now=now)
            await db.commit()
    finally:
        await close_engine()
    return summary


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Expire lapsed subscriptions.")
    parser.add_argument(
        "--skip-reminders",
        action="store_true",
        help="Only expire subscriptions; do not send expiry reminders.",
    )
    return parser


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    args = _parser().parse_args()
    summary = asyncio.run(run(skip_reminders=args.skip_reminders))
    print(
        "expire-subscriptions:",
        f"expired={summary.get('expired', 0)}",
        f"reminded={summary.get('reminded', 0)}",
    )


if __name__ == "__main__":
    main()
