"""Analysis run routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from pbi_analyzer.deps import get_analysis_service
from pbi_analyzer.schemas.analysis import (
    CompareResponse,
    FindingListResponse,
    FindingResponse,
    RunCreate,
    RunListResponse,
    RunResponse,
)
from pbi_analyzer.services.analysis_service import AnalysisService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analysis", tags=["analysis"])


@router.post("/runs", response_model=RunResponse)
def start_run(data: RunCreate, service: AnalysisService = Depends(get_analysis_service)):
    """Start analyzing a model; poll the returned run for progress."""
    run = service.start_run(data.database_name, data.server_address)
    return RunResponse.model_validate(run)


@router.get("/runs", response_model=RunListResponse)
def list_runs(
    limit: int = Query(20),
    offset: int = Query(0),
    service: AnalysisService = Depends(get_analysis_service),
):
    """List runs, newest first."""
    runs, total = service.list_runs(limit=limit, offset=offset)
    return RunListResponse(runs=[RunResponse.model_validate(r) for r in runs], total=total)


@router.get("/runs/{run_id}", response_model=RunResponse)
def get_run(run_id: str, service: AnalysisService = Depends(get_analysis_service)):
    return RunResponse.model_validate(service.get_run(run_id))


@router.post("/runs/{run_id}/cancel", response_model=RunResponse)
def cancel_run(run_id: str, service: AnalysisService = Depends(get_analysis_service)):
    """Request cancellation; a finished run is returned unchanged."""
    return RunResponse.model_validate(service.cancel_run(run_id))


@router.get("/runs/{run_id}/findings", response_model=FindingListResponse)
def get_findings(
    run_id: str,
    severity: Optional[int] = Query(None),
    category: Optional[str] = Query(None),
    fix_status: Optional[str] = Query(None, alias="fixStatus"),
    sort_by: str = Query("severity", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    limit: int = Query(50),
    offset: int = Query(0),
    service: AnalysisService = Depends(get_analysis_service),
):
    """Findings of a completed run with a summary over all of them."""
    page = service.get_findings(
        run_id,
        severity=severity,
        category=category,
        fix_status=fix_status,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )
    return FindingListResponse(
        findings=[FindingResponse.model_validate(f) for f in page["findings"]],
        summary=page["summary"],
        total=page["total"],
    )


@router.get("/runs/{run_id}/compare/{previous_run_id}", response_model=CompareResponse)
def compare_runs(
    run_id: str,
    previous_run_id: str,
    service: AnalysisService = Depends(get_analysis_service),
):
    return CompareResponse.model_validate(service.compare_runs(run_id, previous_run_id))
