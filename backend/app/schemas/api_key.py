"""
Pydantic v2 schemas for API key management.

The raw key appears in exactly one schema (APIKeyCreatedOut) and is
returned exactly once, at creation.
"""

from __future__ import annotations

import datetime
import uuid

from pydantic import BaseModel, ConfigDict, Field


class APIKeyCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        examples=["production backend"],
        description="Display name for the key",
    )


class APIKeyOut(BaseModel):
    """Key metadata — safe to list."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    display_name: str
    prefix: str
    is_active: bool
    created_at: datetime.datetime
    last_used_at: datetime.datetime | None = None


class APIKeyCreatedOut(BaseModel):
    id: uuid.UUID
    name: str
    prefix: str
    key: str = Field(description="Raw API key. Shown once — store it now.")
    created_at: datetime.datetime


class APIKeyRevokedOut(BaseModel):
    id: uuid.UUID
    is_active: bool = False


class APIKeyValidate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_key: str = Field(..., min_length=1, description="Raw API key to check")


class APIKeyValidOut(BaseModel):
    """Returned only for a live key; anything else is a 401."""

    valid: bool = True
    key_id: uuid.UUID
    owner_id: str
    name: str
    plan: str
