"""HTTP client for the modeling gateway.

The gateway fronts the analytics engine and exposes its modeling tools
(connection, metadata, DAX query, object operations) as JSON tool calls:

    GET  /tools/list                       -> {"tools": [{name, description, inputSchema}]}
    POST /tools/call {name, arguments}     -> {"content": [{"type": "text", "text": ...}], "isError": bool}
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception, retry_if_exception_type, stop_after_attempt, wait_exponential

from pbi_analyzer.config import settings
from pbi_analyzer.exceptions import ModelUnavailable, RemoteExecutionError
from pbi_analyzer.services.model_snapshot import ModelSnapshot

logger = logging.getLogger(__name__)

CONNECTION_TOOL = "connection_operations"
DATABASE_TOOL = "database_operations"
DAX_TOOL = "dax_query_operations"


class ToolError(RemoteExecutionError):
    """A tool call reported failure.

    ``recoverable`` errors come from the tool itself (bad arguments, missing
    object) and can be shown to the agent; the rest mean the gateway is unusable.
    """

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


def parse_tool_result(result: Dict[str, Any]) -> Any:
    """Decode the first text block of a tool result, as JSON when possible."""
    content = result.get("content") or []
    if not content or not content[0].get("text"):
        return None
    text = content[0]["text"]
    try:
        return json.loads(text)
    except ValueError:
        return text


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ToolError) and not exc.recoverable


def _error_message(result: Dict[str, Any], default: str) -> str:
    parsed = parse_tool_result(result)
    if isinstance(parsed, dict):
        return str(parsed.get("message") or parsed.get("error") or default)
    if isinstance(parsed, str) and parsed:
        return parsed
    return default


class ModelGateway:
    """Client for model introspection, query execution and tool calls."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.MODEL_GATEWAY_URL).rstrip("/")
        self.timeout = timeout or settings.MODEL_GATEWAY_TIMEOUT
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # Tool surface
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(settings.MAX_REMOTE_RETRIES),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _list_tools(self) -> List[Dict[str, Any]]:
        with self._client() as client:
            response = client.get("/tools/list")
            response.raise_for_status()
            return response.json().get("tools", [])

    def list_tools(self) -> List[Dict[str, Any]]:
        """Tool definitions: name, description, inputSchema."""
        try:
            return self._list_tools()
        except (httpx.HTTPError, ValueError) as e:
            raise ToolError(f"Cannot list gateway tools: {e}", recoverable=False) from e

    def call_tool(self, name: str, arguments: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """
        Call a gateway tool.

        Args:
            name: Tool name
            arguments: Tool arguments
            timeout: Per-call timeout in seconds

        Returns:
            Parsed tool result

        Raises:
            ToolError: If the tool reports an error (recoverable) or the gateway
                cannot be reached (unrecoverable)
        """
        logger.info(f"Calling gateway tool {name}")
        try:
            with self._client(timeout) as client:
                response = client.post("/tools/call", json={"name": name, "arguments": arguments})
                if 400 <= response.status_code < 500:
                    raise ToolError(f"Tool {name} rejected the request: {response.text[:500]}")
                response.raise_for_status()
                result = response.json()
        except ToolError:
            raise
        except httpx.TimeoutException as e:
            raise ToolError(f"Tool {name} timed out", recoverable=False) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ToolError(f"Tool {name} failed: {e}", recoverable=False) from e

        if result.get("isError"):
            raise ToolError(_error_message(result, f"Tool {name} failed"))
        return parse_tool_result(result)

    # ------------------------------------------------------------------
    # Model introspection
    # ------------------------------------------------------------------

    def connect(self, server_address: str, database_name: str) -> None:
        self.call_tool(
            CONNECTION_TOOL,
            {"request": {"operation": "Connect", "dataSource": server_address, "initialCatalog": database_name}},
        )

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(settings.MAX_REMOTE_RETRIES),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _export_metadata(self, server_address: str, database_name: str) -> Any:
        self.connect(server_address, database_name)
        return self.call_tool(
            DATABASE_TOOL,
            {"request": {"operation": "ExportTMSL", "databaseName": database_name}},
        )

    def fetch_metadata(self, server_address: str, database_name: str) -> Dict[str, Any]:
        """Raw TMSL-style metadata of a model."""
        try:
            metadata = self._export_metadata(server_address, database_name)
        except ToolError as e:
            raise ModelUnavailable(f"Cannot read model {database_name} on {server_address}: {e}") from e

        if isinstance(metadata, dict) and "tmsl" in metadata:
            metadata = metadata["tmsl"]
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError as e:
                raise ModelUnavailable(f"Model {database_name} returned malformed metadata") from e
        if not isinstance(metadata, dict):
            raise ModelUnavailable(f"Model {database_name} returned no metadata")
        return metadata

    def snapshot(self, server_address: str, database_name: str) -> ModelSnapshot:
        """Fetch a model and build its snapshot tree."""
        metadata = self.fetch_metadata(server_address, database_name)
        return ModelSnapshot.from_dict(metadata, database_name=database_name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def execute_query(self, query_text: str, query_id: Optional[str] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Run a DAX query.

        Returns:
            {"columns": [{"name", "dataType"}], "rows": [{...}]}

        Raises:
            RemoteExecutionError: On engine or transport errors, including timeout
        """
        request = {"operation": "Execute", "query": query_text}
        if query_id:
            request["queryId"] = query_id
        try:
            parsed = self.call_tool(DAX_TOOL, {"request": request}, timeout=timeout or settings.QUERY_TIMEOUT)
        except ToolError as e:
            raise RemoteExecutionError(str(e)) from e

        columns: List[Dict[str, Any]] = []
        rows: List[Dict[str, Any]] = []
        if isinstance(parsed, dict):
            columns = list(parsed.get("columns") or [])
            rows = list(parsed.get("rows") or [])
        elif isinstance(parsed, list):
            rows = parsed
            if rows and isinstance(rows[0], dict):
                columns = [{"name": name, "dataType": "string"} for name in rows[0]]
        return {"columns": columns, "rows": rows}

    def cancel_query(self, query_id: str) -> None:
        """Ask the engine to stop a query; best effort."""
        self.call_tool(DAX_TOOL, {"request": {"operation": "Cancel", "queryId": query_id}}, timeout=10.0)

    def validate_query(self, query_text: str) -> Dict[str, Any]:
        """
        Validate a DAX query without running it.

        Returns:
            {"valid": bool, "error": str (when invalid)}
        """
        try:
            parsed = self.call_tool(DAX_TOOL, {"request": {"operation": "Validate", "query": query_text}})
        except ToolError as e:
            if not e.recoverable:
                raise
            return {"valid": False, "error": str(e)}

        if isinstance(parsed, dict) and "valid" in parsed:
            result = {"valid": bool(parsed["valid"])}
            if parsed.get("error"):
                result["error"] = str(parsed["error"])
            return result
        return {"valid": True}
