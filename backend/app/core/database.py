"""
Async database engine, session factory, and ORM base.

Rules enforced:
  • Every DB call goes through AsyncSession (no sync, no raw SQL).
  • Stores receive a session factory and own their transactions, so the
    admission pipeline never holds a session across an upstream call.
  • The declarative Base is shared across all models so Alembic can
    auto-detect schema changes from a single metadata object.
"""

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings

# ── Engine ──────────────────────────────────────────────────
# pool_pre_ping: drop stale connections before reuse
# echo: SQL logging — only in debug mode
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
)

# ── Session factory ─────────────────────────────────────────
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,  # avoid lazy-load issues after commit
)


# ── ORM Base ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """Shared declarative base for all SQLAlchemy models."""


# ── Dialect-aware upsert ────────────────────────────────────
def upsert_for(bind: AsyncEngine | AsyncSession) -> Any:
    """
    Return the INSERT construct that supports ON CONFLICT for this bind.

    Postgres in production, SQLite in tests. Both expose the same
    on_conflict_do_update(index_elements=, set_=, where=) signature.
    """
    engine_ = bind.bind if isinstance(bind, AsyncSession) else bind
    if engine_ is None:
        raise RuntimeError("Session is not bound to an engine")
    if engine_.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert
