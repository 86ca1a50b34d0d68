"""
Subscription tiers and the owner → tier assignment.

`subscription_tiers` is reference data seeded by migration 0002.
An owner with no active row in `owner_subscriptions` falls back to the
default tier (settings.DEFAULT_TIER).
"""

import datetime

from sqlalchemy import TIMESTAMP, BigInteger, CheckConstraint, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class SubscriptionTier(Base):
    """Named plan with a monthly token allowance and a per-key rpm cap."""

    __tablename__ = "subscription_tiers"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    # NULL = unbounded
    tokens_per_month: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    requests_per_minute: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("requests_per_minute >= 0", name="ck_tier_rpm_non_neg"),
        CheckConstraint(
            "tokens_per_month IS NULL OR tokens_per_month >= 0",
            name="ck_tier_tokens_non_neg",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionTier {self.name} tokens={self.tokens_per_month} "
            f"rpm={self.requests_per_minute}>"
        )


class OwnerSubscription(Base):
    """The tier an owner is currently on."""

    __tablename__ = "owner_subscriptions"

    owner_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tier_name: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("subscription_tiers.name"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    current_period_start: Mapped[datetime.datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime.datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
