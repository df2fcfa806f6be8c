"""Analysis run and finding schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pbi_analyzer.schemas.common import CamelModel
from pbi_analyzer.schemas.fix import FixSessionResponse


class RunCreate(CamelModel):
    """Schema for starting an analysis run."""

    database_name: str
    server_address: Optional[str] = None


class RunResponse(CamelModel):
    """Analysis run status."""

    id: str
    model_database_name: str
    server_address: str
    status: str
    error_message: Optional[str] = None
    error_count: int = 0
    warning_count: int = 0
    info_count: int = 0
    rules_evaluated: int = 0
    rule_errors: Optional[List[Dict[str, Any]]] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RunListResponse(CamelModel):
    runs: List[RunResponse]
    total: int


class FindingResponse(CamelModel):
    """One rule violation."""

    id: str
    run_id: str
    ordinal: int
    rule_id: str
    rule_name: str
    category: str
    severity: int  # 1=info, 2=warning, 3=error
    description: Optional[str] = None
    affected_object: str
    object_type: str
    fix_status: str
    fix_summary: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FindingSummary(CamelModel):
    total_count: int
    error_count: int
    warning_count: int
    info_count: int
    fixed_count: int
    unfixed_count: int


class FindingListResponse(CamelModel):
    """A page of findings with a summary over the whole run."""

    findings: List[FindingResponse]
    summary: FindingSummary
    total: int


class FindingDetailResponse(FindingResponse):
    """Finding with its fix sessions, newest first."""

    fix_sessions: List[FixSessionResponse] = []


class RecheckResponse(CamelModel):
    finding: FindingResponse
    resolved: bool


class ComparedFinding(CamelModel):
    rule_id: str
    rule_name: str
    affected_object: str


class CompareResponse(CamelModel):
    """Difference between two runs keyed by rule and affected object."""

    resolved_count: int
    new_count: int
    recurring_count: int
    resolved: List[ComparedFinding]
    new: List[ComparedFinding]
    recurring: List[ComparedFinding]
