"""Finding, autofix session and bulk fix session routes."""

import logging

from fastapi import APIRouter, Depends, Query

from pbi_analyzer.deps import get_analysis_service, get_fix_service
from pbi_analyzer.schemas.analysis import FindingDetailResponse, FindingResponse, RecheckResponse
from pbi_analyzer.schemas.fix import BulkFixSessionResponse, FixSessionResponse, FixStepListResponse, FixStepResponse
from pbi_analyzer.services.analysis_service import AnalysisService
from pbi_analyzer.services.fix_service import FixService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["findings"])


@router.get("/findings/{finding_id}", response_model=FindingDetailResponse)
def get_finding(
    finding_id: str,
    analysis: AnalysisService = Depends(get_analysis_service),
    fixes: FixService = Depends(get_fix_service),
):
    """Finding with its fix session history."""
    finding = analysis.get_finding(finding_id)
    sessions = fixes.list_sessions_for_finding(finding.id)
    detail = FindingDetailResponse.model_validate(finding)
    detail.fix_sessions = [FixSessionResponse.model_validate(s) for s in sessions]
    return detail


@router.post("/findings/{finding_id}/recheck", response_model=RecheckResponse)
def recheck_finding(finding_id: str, analysis: AnalysisService = Depends(get_analysis_service)):
    """Re-evaluate the finding's rule against the live model."""
    finding, resolved = analysis.recheck_finding(finding_id)
    return RecheckResponse(finding=FindingResponse.model_validate(finding), resolved=resolved)


@router.post("/findings/{finding_id}/fix", response_model=FixSessionResponse)
def start_fix(finding_id: str, fixes: FixService = Depends(get_fix_service)):
    """Start an AI autofix session for a finding."""
    return FixSessionResponse.model_validate(fixes.start_fix(finding_id))


@router.get("/findings/{finding_id}/fix/session", response_model=FixSessionResponse)
def get_latest_session(finding_id: str, fixes: FixService = Depends(get_fix_service)):
    return FixSessionResponse.model_validate(fixes.get_latest_session_for_finding(finding_id))


@router.get("/fix-sessions/{session_id}", response_model=FixSessionResponse)
def get_session(session_id: str, fixes: FixService = Depends(get_fix_service)):
    return FixSessionResponse.model_validate(fixes.get_session(session_id))


@router.get("/fix-sessions/{session_id}/steps", response_model=FixStepListResponse)
def get_steps(
    session_id: str,
    after: int = Query(0),
    fixes: FixService = Depends(get_fix_service),
):
    """Steps numbered above ``after``; poll with the last number seen."""
    session = fixes.get_session(session_id)
    steps = fixes.get_steps(session.id, after=after)
    return FixStepListResponse(
        session_id=session.id,
        status=session.status,
        steps=[FixStepResponse.model_validate(s) for s in steps],
    )


@router.post("/fix-sessions/{session_id}/cancel", response_model=FixSessionResponse)
def cancel_session(session_id: str, fixes: FixService = Depends(get_fix_service)):
    return FixSessionResponse.model_validate(fixes.cancel_session(session_id))


@router.post("/analysis/runs/{run_id}/rules/{rule_id}/fix", response_model=BulkFixSessionResponse)
def start_bulk_fix(run_id: str, rule_id: str, fixes: FixService = Depends(get_fix_service)):
    """Start one AI autofix session for every open finding of a rule in a run."""
    return BulkFixSessionResponse.model_validate(fixes.start_bulk_fix(run_id, rule_id))


@router.get("/analysis/runs/{run_id}/rules/{rule_id}/fix/session", response_model=BulkFixSessionResponse)
def get_latest_bulk_session(run_id: str, rule_id: str, fixes: FixService = Depends(get_fix_service)):
    return BulkFixSessionResponse.model_validate(fixes.get_latest_bulk_session(run_id, rule_id))


@router.get("/bulk-fix-sessions/{session_id}", response_model=BulkFixSessionResponse)
def get_bulk_session(session_id: str, fixes: FixService = Depends(get_fix_service)):
    return BulkFixSessionResponse.model_validate(fixes.get_bulk_session(session_id))


@router.get("/bulk-fix-sessions/{session_id}/steps", response_model=FixStepListResponse)
def get_bulk_steps(
    session_id: str,
    after: int = Query(0),
    fixes: FixService = Depends(get_fix_service),
):
    session = fixes.get_bulk_session(session_id)
    steps = fixes.get_bulk_steps(session.id, after=after)
    return FixStepListResponse(
        session_id=session.id,
        status=session.status,
        steps=[FixStepResponse.model_validate(s) for s in steps],
    )


@router.post("/bulk-fix-sessions/{session_id}/cancel", response_model=BulkFixSessionResponse)
def cancel_bulk_session(session_id: str, fixes: FixService = Depends(get_fix_service)):
    return BulkFixSessionResponse.model_validate(fixes.cancel_bulk_session(session_id))
