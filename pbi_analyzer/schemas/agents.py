"""Agent input/output schemas."""

from typing import List, Optional

from pydantic import BaseModel


# Fix Agent
class FixInput(BaseModel):
    """Input for FixAgent."""

    finding_id: str
    rule_id: str
    rule_name: str
    description: Optional[str] = ""
    affected_object: str
    object_type: str
    fix_hint: Optional[str] = None
    server_address: str
    database_name: str


class BulkFixObject(BaseModel):
    finding_id: str
    affected_object: str
    object_type: str


class BulkFixInput(BaseModel):
    """Input for BulkFixAgent: every open violation of one rule."""

    rule_id: str
    rule_name: str
    description: Optional[str] = ""
    objects: List[BulkFixObject]
    fix_hint: Optional[str] = None
    server_address: str
    database_name: str


class FixOutput(BaseModel):
    """Output from FixAgent."""

    summary: str
    tool_calls: int
    write_calls: int


# DAX Agent
class DaxInput(BaseModel):
    """Input for DaxAgent."""

    prompt: str
    schema_text: Optional[str] = None


class DaxOutput(BaseModel):
    """Output from DaxAgent."""

    query: str
    explanation: str = ""
