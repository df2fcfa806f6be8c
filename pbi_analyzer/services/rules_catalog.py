"""Best-practice rule catalog provider with an in-process cache."""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pbi_analyzer.config import settings
from pbi_analyzer.exceptions import CatalogUnavailable

logger = logging.getLogger(__name__)


class Rule(BaseModel):
    """A BPA rule as published in the catalog document."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(alias="ID")
    name: str = Field(alias="Name")
    category: str = Field(default="", alias="Category")
    description: str = Field(default="", alias="Description")
    severity: int = Field(default=1, alias="Severity")
    scope: str = Field(default="", alias="Scope")
    expression: str = Field(default="", alias="Expression")
    fix_expression: Optional[str] = Field(default=None, alias="FixExpression")
    compatibility_level: Optional[int] = Field(default=None, alias="CompatibilityLevel")

    @property
    def has_fix_expression(self) -> bool:
        return bool(self.fix_expression and self.fix_expression.strip())

    @property
    def scopes(self) -> List[str]:
        """Object types the rule applies to."""
        return [s.strip() for s in self.scope.split(",") if s.strip()]

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "severity": self.severity,
            "scope": self.scope,
            "hasFixExpression": self.has_fix_expression,
        }


def parse_rules(data: Any) -> List[Rule]:
    """
    Parse a catalog document.

    Args:
        data: Either a bare list of rules or an envelope with a "Rules"/"rules" list

    Returns:
        Rules in document order
    """
    if isinstance(data, list):
        raw_rules = data
    elif isinstance(data, dict):
        raw_rules = data.get("Rules", data.get("rules", []))
    else:
        raise CatalogUnavailable(f"Unexpected rule catalog shape: {type(data).__name__}")

    rules = []
    for raw in raw_rules:
        try:
            rules.append(Rule.model_validate(raw))
        except ValueError as e:
            logger.warning(f"Skipping malformed rule {raw.get('ID') if isinstance(raw, dict) else raw!r}: {e}")
    return rules


class RuleCatalog:
    """Fetches the rule document once and serves it until invalidated."""

    def __init__(self, url: Optional[str] = None, path: Optional[str] = None, timeout: float = 30.0):
        self.url = url if url is not None else settings.RULES_URL
        self.path = path if path is not None else settings.RULES_PATH
        self.timeout = timeout
        self._rules: Optional[List[Rule]] = None
        self._generation = 0
        self._lock = threading.Lock()

    def fetch(self) -> List[Rule]:
        """
        Return the cached rules, loading them on first use.

        The document is loaded without holding the lock, so readers of an
        already populated cache and invalidate() never wait on the network.
        A load that overlaps an invalidate() is returned to its caller but
        not cached.
        """
        with self._lock:
            if self._rules is not None:
                return self._rules
            generation = self._generation

        rules = parse_rules(self._load())

        with self._lock:
            if self._rules is None and self._generation == generation:
                self._rules = rules
                logger.info(f"Loaded {len(rules)} BPA rules")
            return self._rules if self._rules is not None else rules

    def invalidate(self) -> None:
        with self._lock:
            self._rules = None
            self._generation += 1
        logger.info("Rule catalog cache cleared")

    def list_rules(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        """API-formatted rules, optionally filtered by exact category."""
        rules = self.fetch()
        if category:
            rules = [r for r in rules if r.category == category]
        return [r.to_api() for r in rules]

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        for rule in self.fetch():
            if rule.id == rule_id:
                return rule
        return None

    def _load(self) -> Any:
        if self.path:
            logger.info(f"Loading BPA rules from {self.path}")
            try:
                return json.loads(Path(self.path).read_text(encoding="utf-8-sig"))
            except (OSError, ValueError) as e:
                raise CatalogUnavailable(f"Cannot read rule catalog {self.path}: {e}") from e

        logger.info(f"Fetching BPA rules from {self.url}")
        try:
            return self._download()
        except (httpx.HTTPError, ValueError) as e:
            raise CatalogUnavailable(f"Cannot fetch rule catalog: {e}") from e

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(settings.MAX_REMOTE_RETRIES),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _download(self) -> Any:
        with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
            response = client.get(self.url)
            response.raise_for_status()
            # The published document starts with a BOM
            return json.loads(response.content.decode("utf-8-sig"))
