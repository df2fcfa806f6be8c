"""Tests for the rule expression compiler and evaluator."""

import pytest

from pbi_analyzer.services.rule_expressions import (
    Binary,
    ExpressionError,
    MAX_DEPTH,
    Literal,
    Member,
    Name,
    compile_expression,
    evaluate,
    matches,
)

COLUMN = {
    "Name": "Amount",
    "DataType": "Double",
    "IsHidden": False,
    "Description": "",
    "SummarizeBy": "Sum",
    "FormatString": "#,0.00",
    "Annotations": {"PBI_FormatHint": "{}"},
    "Table": {"Name": "Sales", "IsHidden": False},
    "UsedInRelationships": [],
    "ReferencedBy": [{"Name": "Total Sales", "Expression": "SUM(Sales[Amount])"}],
}


def test_parses_into_tagged_nodes():
    node = compile_expression('DataType = DataType.Double and not IsHidden')

    assert isinstance(node, Binary)
    assert node.op == "and"
    assert node.left == Binary("==", Name("DataType"), Member(Name("DataType"), "Double"))


def test_compile_is_cached():
    assert compile_expression("IsHidden") is compile_expression("IsHidden")


@pytest.mark.parametrize(
    "expression,expected",
    [
        ('DataType = "Double"', True),
        ("DataType = DataType.Double", True),
        ("DataType == DataType.Decimal", False),
        ("not IsHidden", True),
        ("!IsHidden && SummarizeBy <> AggregateFunction.None", True),
        ("IsHidden or Description = \"\"", True),
        ("string.IsNullOrWhitespace(Description)", True),
        ('Name.StartsWith("Am")', True),
        ('Name.ToUpper().Contains("MOUNT")', True),
        ("Name.Length > 5", True),
        ("UsedInRelationships.Count = 0", True),
        ("UsedInRelationships.Any()", False),
        ('ReferencedBy.Any(Expression.Contains("SUM"))', True),
        ('ReferencedBy.All(outerIt.Name = "Amount")', True),
        ("Table.IsHidden", False),
        ('HasAnnotation("PBI_FormatHint")', True),
        ('GetAnnotation("Missing") = null', True),
        ('iif(IsHidden, false, FormatString = "#,0.00")', True),
        ("MissingProperty = null", True),
        ("1 + 2 * 3 = 7", True),
        ('RegEx.IsMatch(Name, "^am", RegexOptions.IgnoreCase)', True),
    ],
)
def test_matches(expression, expected):
    assert matches(compile_expression(expression), COLUMN) is expected


def test_regex_escapes_pass_through():
    node = compile_expression('RegEx.IsMatch(Expression, "(?i)IFERROR\\s*\\(")')

    assert matches(node, {"Expression": "IFERROR ( 1/0, 0)"})
    assert not matches(node, {"Expression": "DIVIDE(1, 0)"})


def test_escaped_quote_in_string():
    node = compile_expression('FormatString = "\\"#\\""')

    assert isinstance(node.right, Literal)
    assert matches(node, {"FormatString": '"#"'})


def test_lookup_is_case_insensitive():
    assert evaluate(compile_expression("datatype"), COLUMN) == "Double"


@pytest.mark.parametrize("expression", ["", "Name = ", "(IsHidden", "Name = = 1", "IsHidden $"])
def test_malformed_expressions(expression):
    with pytest.raises(ExpressionError):
        compile_expression(expression)


def test_unknown_function_fails_at_evaluation():
    node = compile_expression("Frobnicate(Name)")

    with pytest.raises(ExpressionError):
        evaluate(node, COLUMN)


def test_nesting_limit():
    shallow = "(" * (MAX_DEPTH - 2) + "IsHidden" + ")" * (MAX_DEPTH - 2)

    assert matches(compile_expression("not " + shallow), {"IsHidden": False})
    with pytest.raises(ExpressionError, match="nested deeper"):
        compile_expression("(" * 1000 + "IsHidden" + ")" * 1000)
    with pytest.raises(ExpressionError, match="nested deeper"):
        compile_expression("!" * 1000 + "IsHidden")
