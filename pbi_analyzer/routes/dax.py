"""DAX query routes."""

import logging

from fastapi import APIRouter, Depends, Query

from pbi_analyzer.deps import get_dax_service
from pbi_analyzer.schemas.dax import (
    DaxExecuteRequest,
    DaxGenerateRequest,
    DaxGenerateResponse,
    DaxHistoryResponse,
    DaxQueryResponse,
    DaxValidateRequest,
    DaxValidateResponse,
)
from pbi_analyzer.services.dax_service import DaxService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dax", tags=["dax"])


@router.post("/execute", response_model=DaxQueryResponse)
def execute_query(data: DaxExecuteRequest, service: DaxService = Depends(get_dax_service)):
    """
    Execute a query.

    Waits a bounded time for the result; a query still RUNNING afterwards is
    returned as is and can be polled through GET /dax/{id}.
    """
    execution = service.execute(data.query_text)
    return DaxQueryResponse.from_row(service.wait_for(execution.query_id))


@router.post("/generate", response_model=DaxGenerateResponse)
def generate_query(data: DaxGenerateRequest, service: DaxService = Depends(get_dax_service)):
    """Translate a question into DAX and execute it."""
    generated, execution = service.generate(data.prompt, data.database_name, data.server_address)
    execution = service.wait_for(execution.query_id)
    return DaxGenerateResponse(
        query=generated["query"],
        explanation=generated["explanation"],
        execution=DaxQueryResponse.from_row(execution),
    )


@router.post("/validate", response_model=DaxValidateResponse)
def validate_query(data: DaxValidateRequest, service: DaxService = Depends(get_dax_service)):
    return DaxValidateResponse.model_validate(service.validate(data.query_text))


@router.get("/history", response_model=DaxHistoryResponse)
def history(
    limit: int = Query(20),
    offset: int = Query(0),
    service: DaxService = Depends(get_dax_service),
):
    """Executions, newest first."""
    rows, total = service.history(limit=limit, offset=offset)
    return DaxHistoryResponse(queries=[DaxQueryResponse.from_row(r) for r in rows], total=total)


@router.get("/{query_id}", response_model=DaxQueryResponse)
def get_query(query_id: str, service: DaxService = Depends(get_dax_service)):
    return DaxQueryResponse.from_row(service.get_execution(query_id))


@router.post("/{query_id}/cancel", response_model=DaxQueryResponse)
def cancel_query(query_id: str, service: DaxService = Depends(get_dax_service)):
    """Stop waiting for a query and mark it FAILED."""
    return DaxQueryResponse.from_row(service.cancel(query_id))
