"""Platform account keyed by the auth provider's opaque uid."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, Text, func, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fluentdesk.models.base import Base

if TYPE_CHECKING:
    from fluentdesk.models.subscription import Subscription


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    email: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text)
    role: Mapped[str] = mapped_column(Text, nullable=False, default="student")
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    email_notifications: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    applied_promo_code: Mapped[str | None] = mapped_column(Text)
    applied_discount_percentage: Mapped[int | None] = mapped_column(Integer)
    applied_promo_plan: Mapped[str | None] = mapped_column(Text)
    promo_code_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    subscription: Mapped[Subscription | None] = relationship(
        back_populates="user", uselist=False, lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint("role IN ('student','teacher','admin')", name="ck_user_role"),
    )
