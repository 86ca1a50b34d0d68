"""
SQLAlchemy models for the usage ledger.

`request_records` — one row per admitted-or-rejected request after
authentication. Treated as a financial ledger: append-only, never updated.

`usage_windows` — per-owner monthly aggregate read by the quota check.
Updated additively in the same transaction that appends a successful
request record.

Design notes:
  • cost_usd uses NUMERIC — exact decimal arithmetic, no float rounding.
  • total_tokens = prompt_tokens + completion_tokens is enforced by a
    CHECK constraint, not just by the application.
  • api_key_id uses ON DELETE RESTRICT: keys are soft-deleted only.
"""

import datetime
import uuid
from decimal import Decimal

from sqlalchemy import (
    TIMESTAMP,
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class RequestRecord(Base):
    """One request's outcome with server-calculated cost."""

    __tablename__ = "request_records"

    # ── Identity ────────────────────────────────────────────
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("api_keys.id", ondelete="RESTRICT"),
        nullable=True,
    )

    # ── Model ───────────────────────────────────────────────
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # ── Token counts ────────────────────────────────────────
    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # ── Cost (exact decimal — financial data) ───────────────
    cost_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 8),
        nullable=False,
        default=Decimal("0"),
    )

    # ── Outcome ─────────────────────────────────────────────
    http_status: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    error_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_streaming: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    # ── Table-level constraints ─────────────────────────────
    __table_args__ = (
        CheckConstraint("prompt_tokens >= 0", name="ck_prompt_tokens_non_neg"),
        CheckConstraint("completion_tokens >= 0", name="ck_completion_tokens_non_neg"),
        CheckConstraint(
            "total_tokens = prompt_tokens + completion_tokens",
            name="ck_total_tokens_sum",
        ),
        CheckConstraint("latency_ms >= 0", name="ck_latency_ms_non_neg"),
        CheckConstraint(
            "outcome IN ('success', 'rejected', 'provider_failure')",
            name="ck_outcome_valid",
        ),
        Index("ix_request_records_owner_created", "owner_id", "created_at"),
        Index("ix_request_records_model", "model"),
    )

    def __repr__(self) -> str:
        return (
            f"<RequestRecord id={self.id!s:.8} model={self.model} "
            f"status={self.http_status} tokens={self.total_tokens}>"
        )


class UsageWindow(Base):
    """Running monthly totals for one owner (period_key = 'YYYY-MM', UTC)."""

    __tablename__ = "usage_windows"

    owner_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    period_key: Mapped[str] = mapped_column(String(7), primary_key=True)
    total_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cost: Mapped[Decimal] = mapped_column(
        Numeric(14, 8),
        nullable=False,
        default=Decimal("0"),
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint("total_tokens >= 0", name="ck_window_tokens_non_neg"),
        CheckConstraint("total_requests >= 0", name="ck_window_requests_non_neg"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageWindow owner={self.owner_id!r} period={self.period_key} "
            f"tokens={self.total_tokens}>"
        )
