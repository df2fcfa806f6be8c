"""Rule evaluation engine: model snapshot + rules -> ordered findings."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from pbi_analyzer.exceptions import RuleEvaluationError
from pbi_analyzer.services.model_snapshot import ModelObject, ModelSnapshot
from pbi_analyzer.services.rule_expressions import compile_expression, matches
from pbi_analyzer.services.rules_catalog import Rule

logger = logging.getLogger(__name__)

# Scope names that cover several concrete object types
SCOPE_ALIASES = {
    "Column": ("DataColumn", "CalculatedColumn", "CalculatedTableColumn"),
    "Provider": ("ProviderDataSource",),
    "ProviderDataSource": ("ProviderDataSource",),
    "StructuredDataSource": ("StructuredDataSource",),
    "CalculationGroup": ("CalculationGroupTable",),
}


@dataclass(frozen=True)
class FindingResult:
    """One rule violation, before persistence."""

    rule_id: str
    rule_name: str
    category: str
    severity: int
    description: str
    affected_object: str
    object_type: str
    has_fix_expression: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "category": self.category,
            "severity": self.severity,
            "description": self.description,
            "affectedObject": self.affected_object,
            "objectType": self.object_type,
            "hasAutoFix": self.has_fix_expression,
        }


@dataclass
class EvaluationOutcome:
    findings: List[FindingResult] = field(default_factory=list)
    errors: List[RuleEvaluationError] = field(default_factory=list)
    rules_evaluated: int = 0

    @property
    def counts(self) -> Dict[str, int]:
        return count_by_severity(f.severity for f in self.findings)


def count_by_severity(severities: Iterable[int]) -> Dict[str, int]:
    counts = {"errorCount": 0, "warningCount": 0, "infoCount": 0}
    for severity in severities:
        if severity >= 3:
            counts["errorCount"] += 1
        elif severity == 2:
            counts["warningCount"] += 1
        else:
            counts["infoCount"] += 1
    return counts


def scope_types(rule: Rule) -> List[str]:
    """Concrete object types a rule applies to."""
    types: List[str] = []
    for scope in rule.scopes:
        for object_type in SCOPE_ALIASES.get(scope, (scope,)):
            if object_type not in types:
                types.append(object_type)
    return types


def evaluate_rule(rule: Rule, objects: Iterable[ModelObject]) -> List[FindingResult]:
    """
    Evaluate one rule against the given objects.

    Raises:
        RuleEvaluationError: If the expression cannot be compiled or evaluated
    """
    try:
        expression = compile_expression(rule.expression)
    except (ValueError, RecursionError) as e:
        raise RuleEvaluationError(rule.id, f"invalid expression: {e}") from e

    findings = []
    for obj in objects:
        try:
            violated = matches(expression, obj.properties)
        except Exception as e:
            raise RuleEvaluationError(rule.id, f"evaluation failed on {obj.affected_object}: {e}") from e
        if violated:
            findings.append(
                FindingResult(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    category=rule.category,
                    severity=rule.severity,
                    description=rule.description,
                    affected_object=obj.affected_object,
                    object_type=obj.object_type,
                    has_fix_expression=rule.has_fix_expression,
                )
            )
    return findings


def evaluate(snapshot: ModelSnapshot, rules: Iterable[Rule]) -> EvaluationOutcome:
    """
    Evaluate a rule set against a model snapshot.

    Rules are visited in catalog order and objects in declaration order, so
    the result is identical for identical inputs. A rule that fails is
    recorded in ``errors`` and contributes no findings.

    Args:
        snapshot: Model metadata tree
        rules: Rules to evaluate

    Returns:
        EvaluationOutcome with ordered findings and per-rule errors
    """
    outcome = EvaluationOutcome()
    for rule in rules:
        outcome.rules_evaluated += 1
        types = scope_types(rule)
        if not types:
            continue
        try:
            outcome.findings.extend(evaluate_rule(rule, snapshot.iter_objects(types)))
        except RuleEvaluationError as e:
            logger.warning(f"Skipping rule: {e}")
            outcome.errors.append(e)

    logger.info(
        f"Evaluated {outcome.rules_evaluated} rules on {snapshot.name}: "
        f"{len(outcome.findings)} findings, {len(outcome.errors)} rule errors"
    )
    return outcome
