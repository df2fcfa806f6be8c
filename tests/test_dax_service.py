"""Tests for the DAX query executor."""

import threading

import pytest

from fakes import FakeLLM
from pbi_analyzer.agents.dax_agent import DaxAgent
from pbi_analyzer.exceptions import NotFound, RemoteExecutionError, ValidationError
from pbi_analyzer.services.dax_service import DaxService

GENERATED = """DAX:
```
EVALUATE Sales
```

EXPLANATION:
Returns every row of the Sales table."""


def test_execute_completes_with_rows(dax_service, gateway):
    gateway.query_delay = 0.05

    execution = dax_service.execute("EVALUATE Sales")
    assert execution.status in ("RUNNING", "COMPLETED")
    assert execution.started_at is not None

    execution = dax_service.wait_for(execution.query_id)

    assert execution.status == "COMPLETED"
    assert execution.row_count == 2
    assert execution.rows[0] == {"Sales[Amount]": 10.5}
    assert execution.columns[0]["name"] == "Sales[Amount]"
    assert execution.execution_time_ms >= 50
    assert execution.completed_at is not None


def test_empty_query_rejected(dax_service):
    with pytest.raises(ValidationError):
        dax_service.execute("   ")
    assert dax_service.history()[1] == 0


def test_cancel_discards_late_result(dax_service, gateway, jobs):
    gateway.query_gate = threading.Event()
    execution = dax_service.execute("EVALUATE Sales")
    assert gateway.query_started.wait(5)

    cancelled = dax_service.cancel(execution.query_id)

    assert cancelled.status == "FAILED"
    assert cancelled.error_message == "cancelled"
    assert execution.query_id in gateway.cancelled

    gateway.query_gate.set()
    jobs.wait(execution.query_id, timeout=5)
    final = dax_service.wait_for(execution.query_id)
    assert final.status == "FAILED"
    assert final.rows is None


def test_cancel_finished_query_is_noop(dax_service):
    execution = dax_service.wait_for(dax_service.execute("EVALUATE Sales").query_id)

    assert dax_service.cancel(execution.query_id).status == "COMPLETED"


def test_remote_error_fails_execution(dax_service, gateway):
    gateway.query_error = RemoteExecutionError("Query (1, 10) The syntax for 'Sales' is incorrect.")

    execution = dax_service.wait_for(dax_service.execute("EVALUATE Sales Sales").query_id)

    assert execution.status == "FAILED"
    assert "syntax" in execution.error_message
    assert execution.execution_time_ms is not None


def test_wait_for_returns_running_on_timeout(jobs, session_factory, gateway):
    service = DaxService(jobs, session_factory, gateway, poll_attempts=2, poll_interval=0.01)
    gateway.query_gate = threading.Event()

    execution = service.wait_for(service.execute("EVALUATE Sales").query_id)
    assert execution.status == "RUNNING"

    gateway.query_gate.set()
    jobs.wait(execution.query_id, timeout=5)
    assert service.get_execution(execution.query_id).status == "COMPLETED"


def test_history_newest_first(dax_service):
    ids = []
    for table in ("Sales", "Date", "Customer"):
        ids.append(dax_service.wait_for(dax_service.execute(f"EVALUATE {table}").query_id).query_id)

    rows, total = dax_service.history(limit=2)
    assert total == 3
    assert [r.query_id for r in rows] == [ids[2], ids[1]]

    rows, _ = dax_service.history(limit=2, offset=2)
    assert [r.query_text for r in rows] == ["EVALUATE Sales"]


def test_unknown_execution(dax_service):
    with pytest.raises(NotFound):
        dax_service.get_execution("00000000-0000-0000-0000-000000000000")


def test_generate_translates_and_executes(jobs, session_factory, gateway):
    llm = FakeLLM(completion=GENERATED)
    service = DaxService(jobs, session_factory, gateway, dax_agent=DaxAgent(llm, retry_delay=0))

    generated, execution = service.generate("Show me all sales", database_name="SalesModel")

    assert generated == {"query": "EVALUATE Sales", "explanation": "Returns every row of the Sales table."}
    assert execution.natural_language == "Show me all sales"
    assert execution.query_text == "EVALUATE Sales"
    assert "Table 'Sales'" in llm.calls[0][0]["content"]
    assert "Column 'Sales'[Amount] (Double)" in llm.calls[0][0]["content"]
    jobs.wait(execution.query_id, timeout=5)


def test_generate_failure_is_remote_error(jobs, session_factory, gateway):
    service = DaxService(jobs, session_factory, gateway, dax_agent=DaxAgent(FakeLLM(completion=""), retry_delay=0))

    with pytest.raises(RemoteExecutionError):
        service.generate("Show me all sales")
    assert service.history()[1] == 0


def test_validate(dax_service, gateway):
    gateway.validation = {"valid": False, "error": "Unexpected token"}

    assert dax_service.validate("EVALUATE") == {"valid": False, "error": "Unexpected token"}
    with pytest.raises(ValidationError):
        dax_service.validate("")
