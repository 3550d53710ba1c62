"""Record which plan a user's pending promo discount was redeemed for.

Revision ID: 004_applied_promo_plan
Revises: 003_webhooks_audit_settings
Create Date: 2026-10-20
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "004_applied_promo_plan"
down_revision: str | None = "003_webhooks_audit_settings"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("users", sa.Column("applied_promo_plan", sa.Text(), nullable=True))
    op.execute(
        """
        UPDATE users AS u
        SET applied_promo_plan = r.plan
        FROM promo_code_usages AS r
        WHERE r.user_id = u.id
          AND r.promo_code = u.applied_promo_code
          AND u.applied_discount_percentage IS NOT NULL
        """
    )


def downgrade() -> None:
    op.drop_column("users", "applied_promo_plan")
