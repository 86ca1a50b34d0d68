"""
Alembic environment for the gateway schema (async engine).

  • DATABASE_URL is read from app.core.config; alembic.ini carries no URL.
  • The migrations target Postgres only (gen_random_uuid(), now()).
    SQLite is for tests and builds its tables with metadata.create_all,
    so a non-Postgres URL is refused here with a clear message.
  • target_metadata is Base.metadata with every gateway model imported,
    so `alembic revision --autogenerate` sees keys, tiers, counters and
    the usage ledger.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import async_engine_from_config

from app.core.config import settings
from app.core.database import Base

import app.models.api_key  # noqa: F401
import app.models.rate_limit_counter  # noqa: F401
import app.models.subscription  # noqa: F401
import app.models.usage  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _database_url() -> str:
    url = make_url(settings.DATABASE_URL)
    if url.get_backend_name() != "postgresql":
        raise RuntimeError(
            f"Migrations require Postgres; DATABASE_URL uses '{url.get_backend_name()}'. "
            "Use STORE_BACKEND=memory or a postgresql+asyncpg:// URL."
        )
    return settings.DATABASE_URL


config.set_main_option("sqlalchemy.url", _database_url())
target_metadata = Base.metadata


# ── Offline: emit SQL without connecting ───────────────────
def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


# ── Online: asyncpg engine, migrations run in a sync shim ──
def _run_with_connection(connection) -> None:  # type: ignore[no-untyped-def]
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


async def _run_online() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_with_connection)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(_run_online())
