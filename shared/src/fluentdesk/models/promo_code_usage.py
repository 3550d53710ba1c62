"""Immutable redemption receipts, one per (user, code)."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from fluentdesk.models.base import Base


class PromoCodeUsage(Base):
    __tablename__ = "promo_code_usages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # sha256 of "<user_id>:<CODE>"; a second redemption collides on this key.
    redemption_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    promo_code_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("promo_codes.id", ondelete="SET NULL")
    )
    promo_code: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str] = mapped_column(
        Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    user_name: Mapped[str | None] = mapped_column(Text)
    user_email: Mapped[str | None] = mapped_column(Text)
    plan: Mapped[str] = mapped_column(Text, nullable=False)
    discount_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "promo_code", name="uq_promo_code_usage_user_code"),
        Index("idx_promo_code_usages_code", "promo_code_id", "applied_at"),
        Index("idx_promo_code_usages_user", "user_id", "applied_at"),
    )
