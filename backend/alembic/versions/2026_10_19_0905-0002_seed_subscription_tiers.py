"""seed subscription tiers

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19

Free / Pro / Enterprise. Keep in sync with app.services.tiers.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_tiers = sa.table(
    "subscription_tiers",
    sa.column("name", sa.String),
    sa.column("tokens_per_month", sa.BigInteger),
    sa.column("requests_per_minute", sa.Integer),
)


def upgrade() -> None:
    op.bulk_insert(
        _tiers,
        [
            {"name": "Free", "tokens_per_month": 100_000, "requests_per_minute": 10},
            {"name": "Pro", "tokens_per_month": 1_000_000, "requests_per_minute": 60},
            {"name": "Enterprise", "tokens_per_month": None, "requests_per_minute": 600},
        ],
    )


def downgrade() -> None:
    op.execute(
        _tiers.delete().where(_tiers.c.name.in_(["Free", "Pro", "Enterprise"]))
    )
