"""Create users, promo_codes and promo_code_usages tables.

Revision ID: 001_users_promo_codes
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

revision: str = "001_users_promo_codes"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("role", sa.Text(), nullable=False, server_default=sa.text("'student'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "email_notifications",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("true"),
        ),
        sa.Column("applied_promo_code", sa.Text(), nullable=True),
        sa.Column("applied_discount_percentage", sa.Integer(), nullable=True),
        sa.Column("promo_code_applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint("role IN ('student','teacher','admin')", name="ck_user_role"),
    )

    op.create_table(
        "promo_codes",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("discount_percentage", sa.Integer(), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "applicable_plans",
            JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_by",
            sa.Text(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint(
            "discount_percentage >= 1 AND discount_percentage <= 100",
            name="ck_promo_code_discount_percentage",
        ),
        sa.CheckConstraint(
            "usage_limit IS NULL OR usage_limit > 0",
            name="ck_promo_code_usage_limit",
        ),
        sa.CheckConstraint("usage_count >= 0", name="ck_promo_code_usage_count"),
    )
    op.create_index(
        "idx_promo_codes_active_window",
        "promo_codes",
        ["is_active", "valid_from", "valid_until"],
    )

    op.create_table(
        "promo_code_usages",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column("redemption_key", sa.Text(), nullable=False, unique=True),
        sa.Column(
            "promo_code_id",
            UUID(as_uuid=True),
            sa.ForeignKey("promo_codes.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("promo_code", sa.Text(), nullable=False),
        sa.Column(
            "user_id",
            sa.Text(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_name", sa.Text(), nullable=True),
        sa.Column("user_email", sa.Text(), nullable=True),
        sa.Column("plan", sa.Text(), nullable=False),
        sa.Column("discount_percentage", sa.Integer(), nullable=False),
        sa.Column(
            "applied_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.UniqueConstraint("user_id", "promo_code", name="uq_promo_code_usage_user_code"),
    )
    op.create_index(
        "idx_promo_code_usages_code",
        "promo_code_usages",
        ["promo_code_id", "applied_at"],
    )
    op.create_index(
        "idx_promo_code_usages_user",
        "promo_code_usages",
        ["user_id", "applied_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_promo_code_usages_user", table_name="promo_code_usages")
    op.drop_index("idx_promo_code_usages_code", table_name="promo_code_usages")
    op.drop_table("promo_code_usages")
    op.drop_index("idx_promo_codes_active_window", table_name="promo_codes")
    op.drop_table("promo_codes")
    op.drop_table("users")
