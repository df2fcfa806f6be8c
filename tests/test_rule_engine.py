"""Tests for the rule evaluation engine."""

import random

import pytest

from fakes import BROKEN_RULE, SAMPLE_MODEL, SAMPLE_RULES
from pbi_analyzer.exceptions import RuleEvaluationError
from pbi_analyzer.services.model_snapshot import ModelSnapshot
from pbi_analyzer.services.rule_engine import count_by_severity, evaluate, evaluate_rule, scope_types
from pbi_analyzer.services.rules_catalog import Rule, parse_rules


@pytest.fixture
def snapshot():
    return ModelSnapshot.from_dict(SAMPLE_MODEL)


def test_findings_follow_rule_then_declaration_order(snapshot):
    outcome = evaluate(snapshot, parse_rules(SAMPLE_RULES))

    assert [(f.rule_id, f.affected_object) for f in outcome.findings] == [
        ("AVOID_FLOATING_POINT_DATA_TYPES", "'Sales'[Amount]"),
        ("AVOID_FLOATING_POINT_DATA_TYPES", "'Sales'[Margin]"),
        ("DAX_IFERROR", "'Sales'[Safe Ratio]"),
    ]
    assert outcome.findings[1].object_type == "CalculatedColumn"
    assert outcome.counts == {"errorCount": 1, "warningCount": 2, "infoCount": 0}
    assert outcome.rules_evaluated == 2
    assert outcome.errors == []


def test_evaluation_is_deterministic(snapshot):
    """Evaluating twice, or on a freshly built snapshot, yields identical findings."""
    rules = parse_rules(SAMPLE_RULES + [BROKEN_RULE])

    first = evaluate(snapshot, rules)
    second = evaluate(snapshot, rules)
    third = evaluate(ModelSnapshot.from_dict(SAMPLE_MODEL), rules)

    assert first.findings == second.findings == third.findings
    assert [e.rule_id for e in first.errors] == [e.rule_id for e in third.errors]


def test_random_rule_subsets_are_stable(snapshot):
    rng = random.Random(7)
    rules = parse_rules(SAMPLE_RULES + [BROKEN_RULE])

    for _ in range(20):
        subset = [r for r in rules if rng.random() < 0.6]
        assert evaluate(snapshot, subset).findings == evaluate(snapshot, subset).findings


def test_broken_rule_is_isolated(snapshot):
    rules = parse_rules([BROKEN_RULE] + SAMPLE_RULES)

    outcome = evaluate(snapshot, rules)

    assert len(outcome.findings) == 3
    assert [e.rule_id for e in outcome.errors] == ["BROKEN_RULE"]
    assert outcome.rules_evaluated == 3


def test_evaluate_rule_raises_for_bad_expression(snapshot):
    rule = Rule.model_validate(BROKEN_RULE)

    with pytest.raises(RuleEvaluationError) as excinfo:
        evaluate_rule(rule, snapshot.iter_objects(scope_types(rule)))
    assert excinfo.value.rule_id == "BROKEN_RULE"


def test_column_scope_alias_covers_all_column_types():
    rule = Rule(ID="R", Name="r", Scope="Column, Measure")

    assert scope_types(rule) == ["DataColumn", "CalculatedColumn", "CalculatedTableColumn", "Measure"]


def test_hidden_rule_example(snapshot):
    rule = Rule(
        ID="HIDE_FOREIGN_KEYS",
        Name="Hide foreign keys",
        Category="Formatting",
        Severity=2,
        Scope="DataColumn",
        Expression=(
            "not IsHidden and UsedInRelationships.Any("
            "FromColumn.Name == outerIt.Name and FromTable.Name == outerIt.Table.Name)"
        ),
    )

    findings = evaluate_rule(rule, snapshot.iter_objects(scope_types(rule)))

    assert [f.affected_object for f in findings] == ["'Sales'[Quantity]"]
    assert findings[0].to_dict()["hasAutoFix"] is False


def test_count_by_severity():
    assert count_by_severity([1, 2, 3, 3, 2, 1, 1]) == {"errorCount": 2, "warningCount": 2, "infoCount": 3}


@pytest.mark.parametrize(
    "expression",
    [
        "(" * 5000 + "IsHidden" + ")" * 5000,
        "not " * 5000 + "IsHidden",
        "IsHidden or " * 5000 + "IsHidden",
    ],
)
def test_deeply_nested_rule_is_isolated(snapshot, expression):
    nested = dict(BROKEN_RULE, ID="NESTED_RULE", Expression=expression)
    rules = parse_rules(SAMPLE_RULES + [nested])

    outcome = evaluate(snapshot, rules)

    assert len(outcome.findings) == 3
    assert [e.rule_id for e in outcome.errors] == ["NESTED_RULE"]


def _relationship_model(from_type, to_type):
    return {
        "name": "Keys",
        "model": {
            "tables": [
                {"name": "Sales", "columns": [{"name": "ProductKey", "dataType": from_type}]},
                {"name": "Product", "columns": [{"name": "ProductKey", "dataType": to_type}]},
            ],
            "relationships": [
                {
                    "name": "0b9c1f2e",
                    "fromTable": "Sales",
                    "fromColumn": "ProductKey",
                    "toTable": "Product",
                    "toColumn": "ProductKey",
                }
            ],
        },
    }


RELATIONSHIP_TYPES_RULE = Rule(
    ID="RELATIONSHIP_COLUMNS_SAME_DATA_TYPE",
    Name="Relationship columns should be of the same data type",
    Category="DAX Expressions",
    Severity=3,
    Scope="Relationship",
    Expression="FromColumn.DataType != ToColumn.DataType",
)


def test_relationship_columns_with_same_type_pass():
    snapshot = ModelSnapshot.from_dict(_relationship_model("int64", "int64"))

    outcome = evaluate(snapshot, [RELATIONSHIP_TYPES_RULE])

    assert outcome.findings == []
    assert outcome.errors == []


def test_relationship_columns_with_different_types_fail():
    snapshot = ModelSnapshot.from_dict(_relationship_model("int64", "string"))

    outcome = evaluate(snapshot, [RELATIONSHIP_TYPES_RULE])

    assert [(f.object_type, f.affected_object) for f in outcome.findings] == [
        ("Relationship", "'Sales'[ProductKey] -> 'Product'[ProductKey]")
    ]
    assert outcome.counts["errorCount"] == 1


def test_relationship_ends_compare_by_reference(snapshot):
    rule = Rule(ID="R", Name="r", Scope="DataColumn", Expression="UsedInRelationships.Any(ToColumn = outerIt)")

    findings = evaluate_rule(rule, snapshot.iter_objects(scope_types(rule)))

    assert [f.affected_object for f in findings] == ["'Date'[Date]"]
