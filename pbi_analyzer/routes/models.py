"""Semantic model routes."""

import logging

from fastapi import APIRouter, Depends, Query

from pbi_analyzer.deps import get_model_service
from pbi_analyzer.models.semantic_model import SemanticModel
from pbi_analyzer.schemas.analysis import RunResponse
from pbi_analyzer.schemas.semantic_model import (
    ModelDeleteResponse,
    ModelDetailResponse,
    ModelListResponse,
    ModelResponse,
    ModelRunsResponse,
)
from pbi_analyzer.services.model_service import ModelService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/models", tags=["models"])


def _model_fields(model: SemanticModel, run_count: int) -> dict:
    return {
        "database_name": model.database_name,
        "server_address": model.server_address,
        "model_name": model.model_name,
        "created_at": model.created_at,
        "updated_at": model.updated_at,
        "run_count": run_count,
    }


@router.get("", response_model=ModelListResponse)
def list_models(service: ModelService = Depends(get_model_service)):
    """List models, most recently updated first."""
    return ModelListResponse(
        models=[ModelResponse(**_model_fields(model, count)) for model, count in service.list_models()]
    )


@router.get("/{database_name}", response_model=ModelDetailResponse)
def get_model(database_name: str, service: ModelService = Depends(get_model_service)):
    """Model with its most recent runs."""
    model = service.get_model(database_name)
    runs, total = service.get_model_runs(database_name, limit=500)
    return ModelDetailResponse(
        **_model_fields(model, total),
        runs=[RunResponse.model_validate(r) for r in runs],
    )


@router.get("/{database_name}/runs", response_model=ModelRunsResponse)
def get_model_runs(
    database_name: str,
    limit: int = Query(20),
    offset: int = Query(0),
    service: ModelService = Depends(get_model_service),
):
    runs, total = service.get_model_runs(database_name, limit=limit, offset=offset)
    return ModelRunsResponse(
        database_name=database_name,
        runs=[RunResponse.model_validate(r) for r in runs],
        total=total,
    )


@router.delete("/{database_name}", response_model=ModelDeleteResponse)
def delete_model(database_name: str, service: ModelService = Depends(get_model_service)):
    """Delete a model with all of its runs, findings and fix sessions."""
    deleted = service.delete_model(database_name)
    return ModelDeleteResponse(database_name=database_name, deleted=deleted)
