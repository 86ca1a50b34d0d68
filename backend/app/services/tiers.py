"""
Subscription tier limits as the admission path sees them.

The database (subscription_tiers) is the source of truth for the SQL
backend; DEFAULT_TIERS seeds the memory backend and mirrors migration 0002.
"""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TierLimits:
    """
    Attributes:
        name:                Plan name (Free, Pro, Enterprise).
        tokens_per_month:    Monthly token allowance. None = unbounded.
        requests_per_minute: Per-key request cap for one minute window.
    """

    name: str
    tokens_per_month: int | None
    requests_per_minute: int

    @property
    def is_unbounded(self) -> bool:
        return self.tokens_per_month is None


FREE = TierLimits(name="Free", tokens_per_month=100_000, requests_per_minute=10)
PRO = TierLimits(name="Pro", tokens_per_month=1_000_000, requests_per_minute=60)
ENTERPRISE = TierLimits(name="Enterprise", tokens_per_month=None, requests_per_minute=600)

DEFAULT_TIERS: dict[str, TierLimits] = {t.name: t for t in (FREE, PRO, ENTERPRISE)}
