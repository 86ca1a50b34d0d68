"""
Dev bootstrap script — issue an API key for a local owner.

Usage:
    python -m scripts.bootstrap_dev [owner_id] [tier]

This will:
  1. Put the owner on the given tier (default: Free)
  2. Generate an API key for the owner
  3. Print the raw key ONCE (it is never stored)

Requires STORE_BACKEND=sql and a migrated database (alembic upgrade head).
The raw key is shown exactly once — copy it immediately.
"""

import asyncio
import sys

# Ensure the project root is on the path
sys.path.insert(0, ".")

from app.core.config import settings
from app.core.database import async_session_factory, engine
from app.services.credential_store import SqlCredentialStore
from app.services.tiers import DEFAULT_TIERS, FREE


async def main(owner_id: str, tier_name: str) -> None:
    store = SqlCredentialStore(
        async_session_factory,
        DEFAULT_TIERS.get(settings.DEFAULT_TIER, FREE),
    )

    # ── Assign tier ─────────────────────────────────────────
    await store.assign_tier(owner_id, tier_name)
    tier = await store.tier_for_owner(owner_id)

    # ── Generate API key ────────────────────────────────────
    issued = await store.create(owner_id, "Dev Key")

    # ── Print results ───────────────────────────────────────
    print()
    print("=" * 60)
    print("  Dev Bootstrap Complete")
    print("=" * 60)
    print()
    print(f"  Owner:      {owner_id}")
    print(f"  Tier:       {tier.name} ({tier.requests_per_minute} req/min)")
    print(f"  Key ID:     {issued.key_id}")
    print()
    print(f"  API Key:    {issued.raw_secret}")
    print()
    print("  ⚠  Copy this key now — it will NEVER be shown again.")
    print("=" * 60)
    print()

    await engine.dispose()


if __name__ == "__main__":
    owner = sys.argv[1] if len(sys.argv) > 1 else "dev-owner"
    tier_arg = sys.argv[2] if len(sys.argv) > 2 else "Free"
    asyncio.run(main(owner, tier_arg))
