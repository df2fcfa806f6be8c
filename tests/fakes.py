"""Sample data and in-memory collaborators shared by the tests."""

import copy
import json
import threading
import time
from typing import Any, Dict, List, Optional

from pbi_analyzer.services.model_snapshot import ModelSnapshot

SAMPLE_RULES = [
    {
        "ID": "AVOID_FLOATING_POINT_DATA_TYPES",
        "Name": "[Performance] Do not use floating point data types",
        "Category": "Performance",
        "Description": "Floating point data types can cause unexpected results when evaluating values.",
        "Severity": 2,
        "Scope": "DataColumn, CalculatedColumn",
        "Expression": 'DataType = "Double"',
        "FixExpression": "DataType = DataType.Decimal",
        "CompatibilityLevel": 1200,
    },
    {
        "ID": "DAX_IFERROR",
        "Name": "[DAX Expressions] Avoid using the IFERROR function",
        "Category": "DAX Expressions",
        "Description": "Avoid using the IFERROR function as it may cause performance degradation.",
        "Severity": 3,
        "Scope": "Measure",
        "Expression": 'RegEx.IsMatch(Expression, "(?i)IFERROR\\s*\\(")',
        "CompatibilityLevel": 1200,
    },
]

BROKEN_RULE = {
    "ID": "BROKEN_RULE",
    "Name": "Broken rule",
    "Category": "Maintenance",
    "Description": "Expression does not parse.",
    "Severity": 1,
    "Scope": "Table",
    "Expression": "Name = ",
}

SAMPLE_MODEL = {
    "name": "SalesModel",
    "compatibilityLevel": 1600,
    "model": {
        "culture": "en-US",
        "tables": [
            {
                "name": "Sales",
                "columns": [
                    {"name": "Amount", "dataType": "double", "sourceColumn": "Amount"},
                    {"name": "Quantity", "dataType": "int64", "sourceColumn": "Quantity"},
                    {"name": "Margin", "type": "calculated", "dataType": "double", "expression": "[Amount] * 0.1"},
                ],
                "measures": [
                    {"name": "Total Sales", "expression": "SUM(Sales[Amount])"},
                    {"name": "Safe Ratio", "expression": "IFERROR(DIVIDE([Total Sales], 0), 0)"},
                ],
                "partitions": [{"name": "Sales", "source": {"type": "m", "expression": "let Source = 1 in Source"}}],
            },
            {
                "name": "Date",
                "columns": [{"name": "Date", "dataType": "dateTime", "sourceColumn": "Date"}],
            },
        ],
        "relationships": [
            {"name": "r1", "fromTable": "Sales", "fromColumn": "Quantity", "toTable": "Date", "toColumn": "Date"},
        ],
    },
}


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll a condition from a test."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeGateway:
    """In-memory stand-in for the model gateway."""

    def __init__(self, metadata: Optional[Dict[str, Any]] = None):
        self.metadata = copy.deepcopy(metadata if metadata is not None else SAMPLE_MODEL)
        self.metadata_error: Optional[Exception] = None
        self.query_delay = 0.0
        self.query_result: Dict[str, Any] = {
            "columns": [{"name": "Sales[Amount]", "dataType": "Double"}],
            "rows": [{"Sales[Amount]": 10.5}, {"Sales[Amount]": 20.0}],
        }
        self.query_error: Optional[Exception] = None
        self.query_gate: Optional[threading.Event] = None
        self.query_started = threading.Event()
        self.snapshot_gate: Optional[threading.Event] = None
        self.cancelled: List[str] = []
        self.tools = [
            {
                "name": "column_operations",
                "description": "Read or change columns",
                "inputSchema": {"type": "object", "properties": {"request": {"type": "object"}}},
            }
        ]
        self.tool_calls: List[Dict[str, Any]] = []
        self.tool_errors: Dict[str, Exception] = {}
        self.validation: Dict[str, Any] = {"valid": True}

    def snapshot(self, server_address: str, database_name: str) -> ModelSnapshot:
        if self.snapshot_gate is not None:
            self.snapshot_gate.wait(5)
        if self.metadata_error is not None:
            raise self.metadata_error
        return ModelSnapshot.from_dict(copy.deepcopy(self.metadata), database_name=database_name)

    def execute_query(self, query_text: str, query_id: Optional[str] = None, timeout: Optional[float] = None):
        self.query_started.set()
        if self.query_gate is not None:
            self.query_gate.wait(5)
        if self.query_delay:
            time.sleep(self.query_delay)
        if self.query_error is not None:
            raise self.query_error
        return copy.deepcopy(self.query_result)

    def cancel_query(self, query_id: str) -> None:
        self.cancelled.append(query_id)

    def validate_query(self, query_text: str) -> Dict[str, Any]:
        return dict(self.validation)

    def list_tools(self) -> List[Dict[str, Any]]:
        return list(self.tools)

    def call_tool(self, name: str, arguments: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        self.tool_calls.append({"name": name, "arguments": arguments})
        operation = (arguments.get("request") or {}).get("operation")
        if operation in self.tool_errors:
            raise self.tool_errors[operation]
        return {"success": True, "operation": operation}


class FakeLLM:
    """Scripted LLM; each chat_turn pops the next assistant message."""

    def __init__(self, turns: Optional[List[Dict[str, Any]]] = None, completion: str = ""):
        self.turns = list(turns or [])
        self.completion = completion
        self.calls: List[List[Dict[str, Any]]] = []
        self.turn_started = threading.Event()
        self.gates: Dict[int, threading.Event] = {}
        self.repeat_last = False

    def chat_turn(self, model, messages, tools=None, temperature=0.2, max_tokens=4000) -> Dict[str, Any]:
        self.calls.append(messages)
        index = len(self.calls)
        self.turn_started.set()
        gate = self.gates.get(index)
        if gate is not None:
            gate.wait(5)
        if self.repeat_last and len(self.turns) == 1:
            return copy.deepcopy(self.turns[0])
        if not self.turns:
            return {"role": "assistant", "content": "Done"}
        return self.turns.pop(0)

    def chat_completion(self, model, messages, temperature=0.2, max_tokens=4000) -> str:
        self.calls.append(messages)
        return self.completion


def tool_call(call_id: str, operation: str, **request: Any) -> Dict[str, Any]:
    """Assistant tool call in chat-completions format."""
    return {
        "id": call_id,
        "type": "function",
        "function": {
            "name": "column_operations",
            "arguments": json.dumps({"request": {"operation": operation, **request}}),
        },
    }
