"""
Model catalog router — public, no API key required.

Endpoints:
  GET /v1/models        — OpenAI-style list with gateway extras
  GET /v1/models/{id}   — one model, 404 unknown_model if absent
"""

from fastapi import APIRouter, status

from app.core.errors import UnknownModel
from app.core.runtime import RuntimeDep
from app.schemas.catalog import ModelListOut, ModelOut

router = APIRouter(tags=["Models"])


@router.get(
    "/models",
    response_model=ModelListOut,
    summary="List available models",
)
async def list_models(runtime: RuntimeDep) -> ModelListOut:
    registry = runtime.registry
    return ModelListOut(
        data=[ModelOut.from_descriptor(d) for d in registry.all()],
        total=len(registry),
        providers=registry.provider_counts(),
    )


@router.get(
    "/models/{model_id}",
    response_model=ModelOut,
    summary="Describe one model",
    responses={status.HTTP_404_NOT_FOUND: {"description": "Unknown model"}},
)
async def get_model(model_id: str, runtime: RuntimeDep) -> ModelOut:
    descriptor = runtime.registry.by_id(model_id)
    if descriptor is None:
        error = UnknownModel(model_id)
        error.status_code = status.HTTP_404_NOT_FOUND
        raise error
    return ModelOut.from_descriptor(descriptor)
