"""create gateway tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Admission core schema:
  - subscription_tiers / owner_subscriptions — plan limits
  - api_keys — hashed credentials, soft delete
  - rate_limit_counters — per-key fixed minute windows
  - usage_windows — per-owner monthly totals
  - request_records — append-only ledger
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── 1. subscription_tiers ───────────────────────────────
    op.create_table(
        "subscription_tiers",
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("tokens_per_month", sa.BigInteger(), nullable=True),
        sa.Column("requests_per_minute", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("name"),
        sa.CheckConstraint("requests_per_minute >= 0", name="ck_tier_rpm_non_neg"),
        sa.CheckConstraint(
            "tokens_per_month IS NULL OR tokens_per_month >= 0",
            name="ck_tier_tokens_non_neg",
        ),
    )

    # ── 2. owner_subscriptions ──────────────────────────────
    op.create_table(
        "owner_subscriptions",
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("tier_name", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("owner_id"),
        sa.ForeignKeyConstraint(["tier_name"], ["subscription_tiers.name"]),
    )

    # ── 3. api_keys ─────────────────────────────────────────
    op.create_table(
        "api_keys",
        sa.Column("id", sa.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("key_hash", sa.Text(), nullable=False),
        sa.Column("prefix", sa.String(16), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_used_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key_hash"),
    )
    op.create_index("ix_api_keys_owner_id", "api_keys", ["owner_id"])

    # ── 4. rate_limit_counters ──────────────────────────────
    op.create_table(
        "rate_limit_counters",
        sa.Column("api_key_id", sa.UUID(), nullable=False),
        sa.Column("window_start", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("api_key_id", "window_start"),
        sa.ForeignKeyConstraint(["api_key_id"], ["api_keys.id"], ondelete="CASCADE"),
    )
    # Pruning scans by window_start alone
    op.create_index(
        "ix_rate_limit_counters_window_start",
        "rate_limit_counters",
        ["window_start"],
    )

    # ── 5. usage_windows ────────────────────────────────────
    op.create_table(
        "usage_windows",
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("period_key", sa.String(7), nullable=False),
        sa.Column("total_tokens", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cost", sa.Numeric(14, 8), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("owner_id", "period_key"),
        sa.CheckConstraint("total_tokens >= 0", name="ck_window_tokens_non_neg"),
        sa.CheckConstraint("total_requests >= 0", name="ck_window_requests_non_neg"),
    )

    # ── 6. request_records ──────────────────────────────────
    op.create_table(
        "request_records",
        sa.Column("id", sa.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=False),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("api_key_id", sa.UUID(), nullable=True),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(32), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False),
        sa.Column("completion_tokens", sa.Integer(), nullable=False),
        sa.Column("total_tokens", sa.Integer(), nullable=False),
        sa.Column("cost_usd", sa.Numeric(12, 8), nullable=False),
        sa.Column("http_status", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("error_type", sa.String(50), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=False),
        sa.Column("is_streaming", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["api_key_id"], ["api_keys.id"], ondelete="RESTRICT"),
        sa.CheckConstraint("prompt_tokens >= 0", name="ck_prompt_tokens_non_neg"),
        sa.CheckConstraint("completion_tokens >= 0", name="ck_completion_tokens_non_neg"),
        sa.CheckConstraint(
            "total_tokens = prompt_tokens + completion_tokens",
            name="ck_total_tokens_sum",
        ),
        sa.CheckConstraint("latency_ms >= 0", name="ck_latency_ms_non_neg"),
        sa.CheckConstraint(
            "outcome IN ('success', 'rejected', 'provider_failure')",
            name="ck_outcome_valid",
        ),
    )
    op.create_index("ix_request_records_owner_created", "request_records", ["owner_id", "created_at"])
    op.create_index("ix_request_records_model", "request_records", ["model"])


def downgrade() -> None:
    op.drop_index("ix_request_records_model", table_name="request_records")
    op.drop_index("ix_request_records_owner_created", table_name="request_records")
    op.drop_table("request_records")
    op.drop_table("usage_windows")
    op.drop_index("ix_rate_limit_counters_window_start", table_name="rate_limit_counters")
    op.drop_table("rate_limit_counters")
    op.drop_index("ix_api_keys_owner_id", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_table("owner_subscriptions")
    op.drop_table("subscription_tiers")
