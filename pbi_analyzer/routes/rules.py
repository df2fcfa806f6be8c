"""Rule catalog routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from pbi_analyzer.deps import get_rule_catalog
from pbi_analyzer.schemas.rules import RuleListResponse, RuleResponse
from pbi_analyzer.services.rules_catalog import RuleCatalog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rules", tags=["rules"])


@router.get("", response_model=RuleListResponse)
def list_rules(
    category: Optional[str] = Query(None),
    catalog: RuleCatalog = Depends(get_rule_catalog),
):
    """List BPA rules, optionally filtered by category."""
    rules = [RuleResponse.model_validate(r) for r in catalog.list_rules(category)]
    return RuleListResponse(rules=rules, total=len(rules))


@router.post("/refresh", response_model=RuleListResponse)
def refresh_rules(catalog: RuleCatalog = Depends(get_rule_catalog)):
    """Drop the cached catalog and fetch it again."""
    catalog.invalidate()
    rules = [RuleResponse.model_validate(r) for r in catalog.list_rules()]
    logger.info(f"Rule catalog refreshed: {len(rules)} rules")
    return RuleListResponse(rules=rules, total=len(rules))
