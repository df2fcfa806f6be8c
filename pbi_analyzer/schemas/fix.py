"""Autofix session schemas."""

from datetime import datetime
from typing import Any, List, Optional

from pbi_analyzer.schemas.common import CamelModel


class FixSessionResponse(CamelModel):
    """Autofix session status."""

    id: str
    finding_id: str
    status: str
    summary: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class BulkFixSessionResponse(CamelModel):
    """Rule-level autofix session status."""

    id: str
    run_id: str
    rule_id: str
    status: str
    finding_ids: List[str]
    total_findings: int
    fixed_count: int = 0
    failed_count: int = 0
    summary: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class FixStepResponse(CamelModel):
    step_number: int
    event_type: str  # 'reasoning', 'tool_call', 'tool_result', 'message', 'error'
    content: Any = None
    timestamp: Optional[datetime] = None


class FixStepListResponse(CamelModel):
    """Steps after a given step number, in order."""

    session_id: str
    status: str
    steps: List[FixStepResponse]
