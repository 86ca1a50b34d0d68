"""
Credential store — maps raw API keys to owners and their tier.

Two implementations with the same async interface:
  • SqlCredentialStore    — api_keys / owner_subscriptions tables.
  • MemoryCredentialStore — dicts, for single-instance deployments and tests.

Security:
  • Lookup is by SHA-256 hash only; the raw key never reaches the DB or logs.
  • resolve() returns None for every failure mode (unknown, revoked) so
    callers can produce one generic 401.
  • The display prefix is never used for lookup.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import uuid
from dataclasses import dataclass, field, replace

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.hashing import display_prefix, generate_api_key, hash_api_key
from app.core.database import upsert_for
from app.core.errors import BadRequest, Forbidden, KeyNotFound
from app.models.api_key import APIKey
from app.models.subscription import OwnerSubscription, SubscriptionTier
from app.services.tiers import DEFAULT_TIERS, TierLimits

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True, slots=True)
class ResolvedCredential:
    """Who is calling, and under which limits."""

    key_id: uuid.UUID
    owner_id: str
    tier: TierLimits
    display_name: str = ""


@dataclass(frozen=True, slots=True)
class IssuedCredential:
    """A freshly created key. `raw_secret` is available exactly once."""

    key_id: uuid.UUID
    raw_secret: str
    prefix: str
    display_name: str
    created_at: datetime.datetime


@dataclass(slots=True)
class KeyInfo:
    """Key metadata safe to show to its owner."""

    id: uuid.UUID
    owner_id: str
    display_name: str
    prefix: str
    is_active: bool
    created_at: datetime.datetime
    last_used_at: datetime.datetime | None = None


def _validate_display_name(display_name: str) -> str:
    name = display_name.strip()
    if not name or len(name) > 100:
        raise BadRequest("Key name must be between 1 and 100 characters.")
    return name


# ── SQL backend ─────────────────────────────────────────────
class SqlCredentialStore:
    """Credential store backed by the api_keys table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_tier: TierLimits,
    ) -> None:
        self._session_factory = session_factory
        self._default_tier = default_tier

    async def resolve(self, raw_secret: str) -> ResolvedCredential | None:
        """
        Resolve a raw key to its owner and tier.

        Returns None for unknown and revoked keys alike.
        """
        if not raw_secret:
            return None

        key_hash = hash_api_key(raw_secret)
        stmt = (
            select(APIKey, SubscriptionTier)
            .outerjoin(
                OwnerSubscription,
                and_(
                    OwnerSubscription.owner_id == APIKey.owner_id,
                    OwnerSubscription.status == "active",
                ),
            )
            .outerjoin(
                SubscriptionTier,
                SubscriptionTier.name == OwnerSubscription.tier_name,
            )
            .where(APIKey.key_hash == key_hash)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()

        if row is None:
            return None

        api_key, tier_row = row
        if not api_key.is_active:
            return None

        return ResolvedCredential(
            key_id=api_key.id,
            owner_id=api_key.owner_id,
            tier=self._to_limits(tier_row),
            display_name=api_key.display_name,
        )

    async def touch(self, key_id: uuid.UUID, when: datetime.datetime | None = None) -> None:
        """Record that the key was just used. Last writer wins."""
        stmt = (
            update(APIKey)
            .where(APIKey.id == key_id)
            .values(last_used_at=when or _utcnow())
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def create(self, owner_id: str, display_name: str) -> IssuedCredential:
        """Issue a new key. Only its hash and display prefix are stored."""
        name = _validate_display_name(display_name)
        raw_key, key_hash = generate_api_key()

        api_key = APIKey(
            owner_id=owner_id,
            display_name=name,
            key_hash=key_hash,
            prefix=display_prefix(raw_key),
            created_at=_utcnow(),
        )
        async with self._session_factory() as session:
            session.add(api_key)
            await session.commit()

        logger.info("Issued API key %s for owner %s", api_key.prefix, owner_id)
        return IssuedCredential(
            key_id=api_key.id,
            raw_secret=raw_key,
            prefix=api_key.prefix,
            display_name=api_key.display_name,
            created_at=api_key.created_at,
        )

    async def revoke(self, key_id: uuid.UUID, owner_id: str) -> None:
        """
        Soft-delete a key.

        Raises:
            KeyNotFound: No key with that id.
            Forbidden:   The key belongs to another owner.
        """
        async with self._session_factory() as session:
            api_key = await session.get(APIKey, key_id)
            if api_key is None:
                raise KeyNotFound()
            if api_key.owner_id != owner_id:
                logger.warning("Owner %s attempted to revoke key %s of another owner", owner_id, key_id)
                raise Forbidden()
            api_key.is_active = False
            await session.commit()

        logger.info("Revoked API key %s for owner %s", api_key.prefix, owner_id)

    async def list_for_owner(self, owner_id: str) -> list[KeyInfo]:
        stmt = (
            select(APIKey)
            .where(APIKey.owner_id == owner_id)
            .order_by(APIKey.created_at.desc())
        )
        async with self._session_factory() as session:
            keys = (await session.execute(stmt)).scalars().all()

        return [
            KeyInfo(
                id=k.id,
                owner_id=k.owner_id,
                display_name=k.display_name,
                prefix=k.prefix,
                is_active=k.is_active,
                created_at=k.created_at,
                last_used_at=k.last_used_at,
            )
            for k in keys
        ]

    async def tier_for_owner(self, owner_id: str) -> TierLimits:
        stmt = (
            select(SubscriptionTier)
            .join(OwnerSubscription, OwnerSubscription.tier_name == SubscriptionTier.name)
            .where(
                OwnerSubscription.owner_id == owner_id,
                OwnerSubscription.status == "active",
            )
        )
        async with self._session_factory() as session:
            tier_row = (await session.execute(stmt)).scalar_one_or_none()
        return self._to_limits(tier_row)

    async def assign_tier(self, owner_id: str, tier_name: str) -> None:
        """Administrative: put an owner on a tier (upsert)."""
        async with self._session_factory() as session:
            if await session.get(SubscriptionTier, tier_name) is None:
                raise BadRequest(f"Unknown tier '{tier_name}'.")
            insert = upsert_for(session)
            stmt = insert(OwnerSubscription).values(
                owner_id=owner_id,
                tier_name=tier_name,
                status="active",
            ).on_conflict_do_update(
                index_elements=["owner_id"],
                set_={"tier_name": tier_name, "status": "active"},
            )
            await session.execute(stmt)
            await session.commit()

    def _to_limits(self, tier_row: SubscriptionTier | None) -> TierLimits:
        if tier_row is None:
            return self._default_tier
        return TierLimits(
            name=tier_row.name,
            tokens_per_month=tier_row.tokens_per_month,
            requests_per_minute=tier_row.requests_per_minute,
        )


# ── In-memory backend ───────────────────────────────────────
@dataclass
class MemoryCredentialStore:
    """Dict-backed credential store. Single process only."""

    default_tier: TierLimits
    tiers: dict[str, TierLimits] = field(default_factory=lambda: dict(DEFAULT_TIERS))
    _keys: dict[uuid.UUID, KeyInfo] = field(default_factory=dict)
    _by_hash: dict[str, uuid.UUID] = field(default_factory=dict)
    _subscriptions: dict[str, str] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def resolve(self, raw_secret: str) -> ResolvedCredential | None:
        if not raw_secret:
            return None
        key_id = self._by_hash.get(hash_api_key(raw_secret))
        if key_id is None:
            return None
        info = self._keys[key_id]
        if not info.is_active:
            return None
        return ResolvedCredential(
            key_id=info.id,
            owner_id=info.owner_id,
            tier=await self.tier_for_owner(info.owner_id),
            display_name=info.display_name,
        )

    async def touch(self, key_id: uuid.UUID, when: datetime.datetime | None = None) -> None:
        info = self._keys.get(key_id)
        if info is not None:
            info.last_used_at = when or _utcnow()

    async def create(self, owner_id: str, display_name: str) -> IssuedCredential:
        name = _validate_display_name(display_name)
        raw_key, key_hash = generate_api_key()
        info = KeyInfo(
            id=uuid.uuid4(),
            owner_id=owner_id,
            display_name=name,
            prefix=display_prefix(raw_key),
            is_active=True,
            created_at=_utcnow(),
        )
        async with self._lock:
            self._keys[info.id] = info
            self._by_hash[key_hash] = info.id

        logger.info("Issued API key %s for owner %s", info.prefix, owner_id)
        return IssuedCredential(
            key_id=info.id,
            raw_secret=raw_key,
            prefix=info.prefix,
            display_name=info.display_name,
            created_at=info.created_at,
        )

    async def revoke(self, key_id: uuid.UUID, owner_id: str) -> None:
        async with self._lock:
            info = self._keys.get(key_id)
            if info is None:
                raise KeyNotFound()
            if info.owner_id != owner_id:
                logger.warning("Owner %s attempted to revoke key %s of another owner", owner_id, key_id)
                raise Forbidden()
            info.is_active = False

        logger.info("Revoked API key %s for owner %s", info.prefix, owner_id)

    async def list_for_owner(self, owner_id: str) -> list[KeyInfo]:
        keys = [replace(k) for k in self._keys.values() if k.owner_id == owner_id]
        return sorted(keys, key=lambda k: k.created_at, reverse=True)

    async def tier_for_owner(self, owner_id: str) -> TierLimits:
        tier_name = self._subscriptions.get(owner_id)
        if tier_name is None:
            return self.default_tier
        return self.tiers[tier_name]

    async def assign_tier(self, owner_id: str, tier_name: str) -> None:
        if tier_name not in self.tiers:
            raise BadRequest(f"Unknown tier '{tier_name}'.")
        self._subscriptions[owner_id] = tier_name
