"""
API key management for the signed-in owner.

Endpoints:
  POST   /keys        — issue a key (raw value returned once)
  GET    /keys        — list own keys, newest first
  DELETE /keys/{id}   — revoke (soft delete); 403 for another owner's key
  POST   /keys/validate — check a raw key (no identity header); touches last_used_at
"""

import uuid

from fastapi import APIRouter, status

from app.auth.dependencies import Owner
from app.core.errors import Unauthorized
from app.core.runtime import RuntimeDep
from app.schemas.api_key import (
    APIKeyCreate,
    APIKeyCreatedOut,
    APIKeyOut,
    APIKeyRevokedOut,
    APIKeyValidate,
    APIKeyValidOut,
)

router = APIRouter(tags=["API Keys"])


@router.post(
    "",
    response_model=APIKeyCreatedOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create an API key",
)
async def create_key(payload: APIKeyCreate, owner_id: Owner, runtime: RuntimeDep) -> APIKeyCreatedOut:
    issued = await runtime.credentials.create(owner_id, payload.name)
    return APIKeyCreatedOut(
        id=issued.key_id,
        name=issued.display_name,
        prefix=issued.prefix,
        key=issued.raw_secret,
        created_at=issued.created_at,
    )


@router.get(
    "",
    response_model=list[APIKeyOut],
    summary="List your API keys",
)
async def list_keys(owner_id: Owner, runtime: RuntimeDep) -> list[APIKeyOut]:
    keys = await runtime.credentials.list_for_owner(owner_id)
    return [APIKeyOut.model_validate(k, from_attributes=True) for k in keys]


@router.delete(
    "/{key_id}",
    response_model=APIKeyRevokedOut,
    summary="Revoke an API key",
    responses={
        status.HTTP_403_FORBIDDEN: {"description": "Key belongs to another owner"},
        status.HTTP_404_NOT_FOUND: {"description": "No such key"},
    },
)
async def revoke_key(key_id: uuid.UUID, owner_id: Owner, runtime: RuntimeDep) -> APIKeyRevokedOut:
    await runtime.credentials.revoke(key_id, owner_id)
    return APIKeyRevokedOut(id=key_id)


@router.post(
    "/validate",
    response_model=APIKeyValidOut,
    summary="Validate an API key",
    description="Resolves the key by hash. Revoked and unknown keys both get a 401.",
    responses={status.HTTP_401_UNAUTHORIZED: {"description": "Unknown or revoked key"}},
)
async def validate_key(payload: APIKeyValidate, runtime: RuntimeDep) -> APIKeyValidOut:
    credential = await runtime.credentials.resolve(payload.api_key)
    if credential is None:
        raise Unauthorized()

    await runtime.credentials.touch(credential.key_id)
    return APIKeyValidOut(
        key_id=credential.key_id,
        owner_id=credential.owner_id,
        name=credential.display_name,
        plan=credential.tier.name,
    )
