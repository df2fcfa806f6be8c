"""Rule catalog schemas."""

from typing import List

from pbi_analyzer.schemas.common import CamelModel


class RuleResponse(CamelModel):
    """A BPA rule as exposed by the API."""

    id: str
    name: str
    category: str
    description: str
    severity: int
    scope: str
    has_fix_expression: bool


class RuleListResponse(CamelModel):
    rules: List[RuleResponse]
    total: int
