"""Semantic model schemas."""

from datetime import datetime
from typing import Dict, List, Optional

from pbi_analyzer.schemas.analysis import RunResponse
from pbi_analyzer.schemas.common import CamelModel


class ModelResponse(CamelModel):
    """A model known to the analyzer."""

    database_name: str
    server_address: str
    model_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    run_count: int = 0


class ModelListResponse(CamelModel):
    models: List[ModelResponse]


class ModelRunsResponse(CamelModel):
    """A page of a model's runs, newest first."""

    database_name: str
    runs: List[RunResponse]
    total: int


class ModelDetailResponse(ModelResponse):
    runs: List[RunResponse] = []


class ModelDeleteResponse(CamelModel):
    database_name: str
    deleted: Dict[str, int]
