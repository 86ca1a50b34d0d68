"""
API key model — authentication credential owned by a portal user.

Security notes:
  • Raw API keys are NEVER stored. Only a SHA-256 hash is persisted.
  • The `prefix` column stores the first 12 characters (e.g., "nxq_1f3a9c0b")
    for identification in logs/UI without exposing the full key.
  • `is_active` allows key revocation without deletion (audit trail,
    and request_records keep referencing revoked keys).
"""

import datetime
import uuid

from sqlalchemy import TIMESTAMP, Boolean, String, Text, Uuid, true
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class APIKey(Base):
    """Hashed API key belonging to an owner."""

    __tablename__ = "api_keys"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    # Owner identity as asserted by the external identity provider.
    owner_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    display_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    key_hash: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        unique=True,
    )
    prefix: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    last_used_at: Mapped[datetime.datetime | None] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<APIKey id={self.id!s:.8} prefix={self.prefix!r} "
            f"owner={self.owner_id!r} active={self.is_active}>"
        )
