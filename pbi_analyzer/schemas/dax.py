"""DAX query schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from pbi_analyzer.schemas.common import CamelModel


class DaxExecuteRequest(CamelModel):
    """Schema for executing a query."""

    query_text: str


class DaxValidateRequest(CamelModel):
    query_text: str


class DaxGenerateRequest(CamelModel):
    """Schema for generating and executing a query from a question."""

    prompt: str
    database_name: Optional[str] = None
    server_address: Optional[str] = None


class DaxQueryResponse(CamelModel):
    """A query execution as recorded in the history."""

    id: str
    query_text: str
    natural_language: Optional[str] = None
    status: str
    columns: List[Dict[str, Any]] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: Optional[int] = None
    execution_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "DaxQueryResponse":
        return cls(
            id=row.query_id,
            query_text=row.query_text,
            natural_language=row.natural_language,
            status=row.status,
            columns=row.columns or [],
            rows=row.rows or [],
            row_count=row.row_count,
            execution_time_ms=row.execution_time_ms,
            error_message=row.error_message,
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
        )


class DaxHistoryResponse(CamelModel):
    queries: List[DaxQueryResponse]
    total: int


class DaxGenerateResponse(CamelModel):
    """Generated query, its explanation and the execution it started."""

    query: str
    explanation: str
    execution: DaxQueryResponse


class DaxValidateResponse(CamelModel):
    valid: bool
    error: Optional[str] = None
