"""Autofix agent driving an LLM tool-calling loop against the model gateway."""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from pbi_analyzer.agents.base import BaseAgent
from pbi_analyzer.config import settings
from pbi_analyzer.exceptions import RemoteExecutionError, StepLimitExceeded
from pbi_analyzer.jobs import JobContext
from pbi_analyzer.schemas.agents import BulkFixInput, FixInput, FixOutput
from pbi_analyzer.services.llm_client import LLMClient
from pbi_analyzer.services.model_gateway import ModelGateway, ToolError
from pbi_analyzer.services.step_log import StepLog

logger = logging.getLogger(__name__)

READ_OPERATIONS = {
    "List", "Get", "GetSchema", "GetStats", "GetConnection", "GetPermissions",
    "ListLocalInstances", "Execute", "Validate", "Find", "ExportTMDL", "Fetch",
}

WRITE_OPERATIONS = {
    "Update", "Create", "Delete", "Rename", "Move",
    "Begin", "Commit", "Rollback",
    "Connect", "Disconnect", "Start", "Stop",
}

MAX_TOOL_RESULT_CHARS = 20000


def classify_operation(tool_name: str, arguments: Dict[str, Any]) -> str:
    """Classify a tool call as 'read' or 'write' from its request operation."""
    request = arguments.get("request") if isinstance(arguments, dict) else None
    operation = request.get("operation", "") if isinstance(request, dict) else ""

    if operation in READ_OPERATIONS:
        return "read"
    if operation in WRITE_OPERATIONS:
        return "write"

    # Unknown operations are treated as writes
    logger.warning(f"Unknown operation {operation!r} on tool {tool_name}, classifying as write")
    return "write"


def to_function_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert gateway tool definitions to chat-completions function tools."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("inputSchema") or {"type": "object", "properties": {}},
            },
        }
        for t in tools
        if t.get("name")
    ]


def _hint_block(fix_hint: Optional[str], target: str) -> str:
    """Prompt section translating a catalog fix expression into tool calls."""
    if not fix_hint:
        return ""
    return (
        f"\n\nFix Hint (Tabular Editor expression): {fix_hint}\n"
        f"This hint describes the intended fix in Tabular Editor syntax. Translate it to {target}. "
        "For example:\n"
        '- "IsHidden = true" means set the isHidden property to true via an Update operation\n'
        '- "FormatString = \\"#,0\\"" means set the formatString property\n'
        '- "DataType = DataType.Decimal" means set the dataType to Decimal\n'
        '- "Delete()" means delete the object\n'
        '- "SummarizeBy = AggregateFunction.None" means set summarizeBy to None'
    )


class FixAgent(BaseAgent):
    """Agent that repairs one finding through gateway tool calls.

    Every reasoning, tool call and tool result is written to the session's
    step log as it happens. Cancellation is observed only between steps.
    """

    input_model = FixInput

    def __init__(
        self,
        llm_client: LLMClient,
        gateway: ModelGateway,
        steps: StepLog,
        context: JobContext,
        max_steps: Optional[int] = None,
        model: Optional[str] = None,
    ):
        super().__init__(llm_client, retry_delay=0)
        self.gateway = gateway
        self.steps = steps
        self.context = context
        self.max_steps = max_steps or settings.FIX_MAX_STEPS
        self.model = model or settings.FIX_MODEL

    def execute(self, payload: Dict[str, Any], max_retries: int = 1) -> Dict[str, Any]:
        # Tool calls have side effects; a failed loop is never replayed
        return super().execute(payload, max_retries=max_retries)

    def _run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Run the tool-calling loop until the model stops calling tools."""
        input_data = self.input_model(**payload)
        self._record("reasoning", self._opening(input_data))

        tools = to_function_tools(self.gateway.list_tools())
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self._system_prompt(input_data)},
            {"role": "user", "content": self._user_prompt(input_data)},
        ]
        tool_calls_made = 0
        write_calls = 0

        while True:
            self.context.checkpoint()
            message = self._complete(messages, tools)
            self.context.checkpoint()

            calls = message.get("tool_calls") or []
            content = (message.get("content") or "").strip()

            if not calls:
                output = FixOutput(
                    summary=content or "Fix applied",
                    tool_calls=tool_calls_made,
                    write_calls=write_calls,
                )
                return output.model_dump()

            if content:
                self._record("reasoning", content)

            messages.append({"role": "assistant", "content": message.get("content"), "tool_calls": calls})
            for call in calls:
                access = self._run_tool_call(call, messages)
                tool_calls_made += 1
                if access == "write":
                    write_calls += 1
                self.context.checkpoint()

    def _validate(self, result: Dict[str, Any]) -> bool:
        """Validate a summary was produced."""
        return bool(result.get("summary"))

    def _run_tool_call(self, call: Dict[str, Any], messages: List[Dict[str, Any]]) -> str:
        """Execute one tool call, recording the call and its result as a pair."""
        # A call step is always followed by its result step
        self._ensure_room(2)

        call_id = call.get("id") or ""
        function = call.get("function") or {}
        name = function.get("name", "")
        raw_arguments = function.get("arguments") or "{}"
        try:
            arguments = json.loads(raw_arguments) if isinstance(raw_arguments, str) else dict(raw_arguments)
        except ValueError:
            arguments = None

        access = classify_operation(name, arguments or {})
        self._record("tool_call", {"callId": call_id, "tool": name, "arguments": arguments, "access": access})

        if arguments is None:
            result: Dict[str, Any] = {"callId": call_id, "tool": name, "ok": False, "error": "Arguments are not valid JSON"}
        else:
            try:
                output = self.gateway.call_tool(name, arguments)
                result = {"callId": call_id, "tool": name, "ok": True, "result": output}
            except ToolError as e:
                if not e.recoverable:
                    self._record("tool_result", {"callId": call_id, "tool": name, "ok": False, "error": str(e)})
                    raise
                result = {"callId": call_id, "tool": name, "ok": False, "error": str(e)}

        self._record("tool_result", result)

        text = json.dumps(result.get("result") if result["ok"] else {"error": result["error"]}, default=str)
        messages.append({"role": "tool", "tool_call_id": call_id, "content": text[:MAX_TOOL_RESULT_CHARS]})
        return access

    def _complete(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> Dict[str, Any]:
        try:
            return self.llm.chat_turn(self.model, messages, tools=tools, temperature=0.1)
        except (httpx.HTTPError, ValueError) as e:
            raise RemoteExecutionError(f"LLM request failed: {e}") from e

    def _ensure_room(self, needed: int) -> None:
        if self.steps.count + needed > self.max_steps:
            raise StepLimitExceeded()

    def _record(self, event_type: str, content: Any) -> int:
        self._ensure_room(1)
        return self.steps.append(event_type, content)

    def _opening(self, input_data: FixInput) -> str:
        hint = f" (hint: {input_data.fix_hint})" if input_data.fix_hint else ""
        return f"Using AI agent to fix rule {input_data.rule_id}{hint}"

    def _system_prompt(self, input_data: FixInput) -> str:
        hint_block = _hint_block(input_data.fix_hint, "the appropriate tool call")
        return f"""You are a Power BI modeling expert. Fix the following best practice violation in the semantic model.

Server: {input_data.server_address}
Database: {input_data.database_name}
Rule: {input_data.rule_name}
Rule ID: {input_data.rule_id}
Description: {input_data.description}
Affected Object: {input_data.affected_object}
Object Type: {input_data.object_type}{hint_block}

Use the available tools to inspect the model and apply the fix. Be precise and only modify what is necessary.
When you are done, reply without calling tools and summarize what you changed in one or two sentences."""

    def _user_prompt(self, input_data: FixInput) -> str:
        return (
            f'Fix the best practice violation: "{input_data.rule_name}" on object '
            f'"{input_data.affected_object}" ({input_data.object_type}).\n\n'
            "First inspect the current state of the object, then apply the minimal fix needed to resolve "
            "the violation. After applying the fix, verify it was applied correctly."
        )


class BulkFixAgent(FixAgent):
    """Agent that repairs every listed violation of one rule in a single loop."""

    input_model = BulkFixInput

    def _opening(self, input_data: BulkFixInput) -> str:
        hint = f" (hint: {input_data.fix_hint})" if input_data.fix_hint else ""
        return f"Bulk fixing {len(input_data.objects)} violations of rule {input_data.rule_id}{hint}"

    def _system_prompt(self, input_data: BulkFixInput) -> str:
        hint_block = _hint_block(input_data.fix_hint, "the appropriate tool call for EACH object")
        return f"""You are a Power BI modeling expert. Fix ALL of the following best practice violations in the semantic model.

Server: {input_data.server_address}
Database: {input_data.database_name}
Rule: {input_data.rule_name}
Rule ID: {input_data.rule_id}
Description: {input_data.description}

Affected Objects ({len(input_data.objects)} total):
{_object_list(input_data)}{hint_block}

Use the available tools to apply the fix to EVERY object listed above. Apply the same fix pattern to each.
Be precise and only modify what is necessary. When you are done, reply without calling tools and
summarize what you changed, including the number of objects fixed."""

    def _user_prompt(self, input_data: BulkFixInput) -> str:
        return (
            f'Fix all {len(input_data.objects)} violations of "{input_data.rule_name}". '
            f"Apply the fix to each of these objects:\n\n{_object_list(input_data)}\n\n"
            "Process each object one by one. For each: inspect its current state, apply the fix, then move "
            "to the next. After all objects are fixed, confirm the total count of fixes applied."
        )


def _object_list(input_data: BulkFixInput) -> str:
    return "\n".join(
        f"{i}. {obj.affected_object} ({obj.object_type})" for i, obj in enumerate(input_data.objects, start=1)
    )
