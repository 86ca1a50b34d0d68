"""
Per-key request counter for fixed one-minute windows.

Composite PK (api_key_id, window_start) is the ON CONFLICT target for the
atomic increment in app.services.rate_limiter. Rows for expired windows
are pruned periodically.
"""

import datetime
import uuid

from sqlalchemy import TIMESTAMP, ForeignKey, Integer, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class RateLimitCounter(Base):
    """Requests admitted for one key in one minute window."""

    __tablename__ = "rate_limit_counters"

    api_key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("api_keys.id", ondelete="CASCADE"),
        primary_key=True,
    )
    window_start: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        primary_key=True,
    )
    request_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimitCounter key={self.api_key_id!s:.8} "
            f"window={self.window_start:%H:%M} count={self.request_count}>"
        )
