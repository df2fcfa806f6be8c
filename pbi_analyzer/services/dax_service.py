"""DAX query executor with cancellation and history."""

import logging
import math
import time
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from pbi_analyzer.agents.dax_agent import DaxAgent
from pbi_analyzer.config import settings
from pbi_analyzer.database import parse_uuid
from pbi_analyzer.exceptions import NotFound, RemoteExecutionError, ValidationError
from pbi_analyzer.jobs import JobContext, JobManager, JobRecord, JobStatus
from pbi_analyzer.models.dax_query import DaxQuery
from pbi_analyzer.services.llm_client import LLMClient
from pbi_analyzer.services.model_gateway import ModelGateway
from pbi_analyzer.services.model_snapshot import ModelSnapshot

logger = logging.getLogger(__name__)

SCHEMA_OBJECT_TYPES = ("Table", "CalculatedTable", "DataColumn", "CalculatedColumn", "CalculatedTableColumn", "Measure")


def _elapsed_ms(started: float) -> int:
    return int(math.ceil((time.perf_counter() - started) * 1000))


def describe_schema(snapshot: ModelSnapshot) -> str:
    """Compact listing of tables, columns and measures for prompting."""
    lines: List[str] = []
    for obj in snapshot.iter_objects(SCHEMA_OBJECT_TYPES):
        if obj.object_type in ("Table", "CalculatedTable"):
            lines.append(f"Table {obj.affected_object}")
        elif obj.object_type == "Measure":
            lines.append(f"  Measure {obj.affected_object}")
        else:
            data_type = obj.properties.get("DataType") or "Unknown"
            lines.append(f"  Column {obj.affected_object} ({data_type})")
    return "\n".join(lines)


class DaxService:
    """
    Executes queries against the model as jobs that start RUNNING.

    Cancelling a query asks the engine to stop and finalizes the execution
    as FAILED right away; a result arriving afterwards is discarded.
    """

    KIND = "dax"

    def __init__(
        self,
        jobs: JobManager,
        session_factory: sessionmaker,
        gateway: ModelGateway,
        dax_agent: Optional[DaxAgent] = None,
        poll_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
        default_server: Optional[str] = None,
    ):
        self.jobs = jobs
        self._session_factory = session_factory
        self.gateway = gateway
        self.dax_agent = dax_agent
        self.poll_attempts = poll_attempts if poll_attempts is not None else settings.QUERY_POLL_ATTEMPTS
        self.poll_interval = poll_interval if poll_interval is not None else settings.QUERY_POLL_INTERVAL
        self.default_server = default_server or settings.DEFAULT_SERVER_ADDRESS

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, query_text: str, natural_language: Optional[str] = None) -> DaxQuery:
        """
        Submit a query and return its RUNNING execution immediately.

        Args:
            query_text: DAX query
            natural_language: Prompt the query was generated from, if any

        Returns:
            The execution row
        """
        query_text = (query_text or "").strip()
        if not query_text:
            raise ValidationError("queryText is required")

        submitted = time.perf_counter()
        record = self.jobs.submit(
            self.KIND,
            work=partial(self._run_query, query_text, submitted),
            on_transition=partial(self._persist, query_text, natural_language),
            queued=False,
            abandon_on_cancel=True,
        )
        logger.info(f"Submitted DAX query {record.id}")
        return self.get_execution(record.id)

    def wait_for(self, query_id: str) -> DaxQuery:
        """
        Wait a bounded time for an execution to finish.

        Returns the current state when the wait runs out; the query keeps running.
        """
        execution = self.get_execution(query_id)
        if self.jobs.exists(execution.query_id):
            self.jobs.wait(execution.query_id, timeout=self.poll_attempts * self.poll_interval)
        return self.get_execution(execution.query_id)

    def cancel(self, query_id: str) -> DaxQuery:
        execution = self.get_execution(query_id)
        if self.jobs.exists(execution.query_id):
            self.jobs.cancel(execution.query_id)
        return self.get_execution(execution.query_id)

    def _run_query(self, query_text: str, submitted: float, context: JobContext) -> Dict[str, Any]:
        query_id = context.job_id
        context.on_cancel(partial(self.gateway.cancel_query, query_id))
        context.checkpoint()

        result = self.gateway.execute_query(query_text, query_id=query_id)
        context.checkpoint()

        return {
            "columns": result["columns"],
            "rows": result["rows"],
            "rowCount": len(result["rows"]),
            "executionTimeMs": _elapsed_ms(submitted),
        }

    def _persist(self, query_text: str, natural_language: Optional[str], record: JobRecord) -> None:
        """Write the execution to the query history."""
        with self._session_factory() as db:
            row = db.query(DaxQuery).filter(DaxQuery.query_id == record.id).first()
            if row is None:
                row = DaxQuery(
                    query_id=record.id,
                    query_text=query_text,
                    natural_language=natural_language,
                    created_at=record.created_at,
                )
                db.add(row)

            row.status = record.status.value
            row.started_at = record.started_at
            row.completed_at = record.completed_at

            if record.status == JobStatus.COMPLETED:
                result = record.result
                row.columns = result["columns"]
                row.rows = result["rows"]
                row.row_count = result["rowCount"]
                row.execution_time_ms = result["executionTimeMs"]
            elif record.status == JobStatus.FAILED:
                row.error_message = record.error
                elapsed = (record.completed_at - record.created_at).total_seconds()
                row.execution_time_ms = int(math.ceil(elapsed * 1000))

            db.commit()

    # ------------------------------------------------------------------
    # Translation and validation
    # ------------------------------------------------------------------

    def validate(self, query_text: str) -> Dict[str, Any]:
        query_text = (query_text or "").strip()
        if not query_text:
            raise ValidationError("queryText is required")
        return self.gateway.validate_query(query_text)

    def generate(
        self,
        prompt: str,
        database_name: Optional[str] = None,
        server_address: Optional[str] = None,
    ) -> Tuple[Dict[str, str], DaxQuery]:
        """
        Translate a question into DAX and execute it.

        Args:
            prompt: Natural-language question
            database_name: Model to describe to the translator, if given
            server_address: Server hosting that model

        Returns:
            ({"query", "explanation"}, execution)
        """
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValidationError("prompt is required")

        schema_text = None
        if database_name:
            snapshot = self.gateway.snapshot(server_address or self.default_server, database_name)
            schema_text = describe_schema(snapshot)

        agent = self.dax_agent or DaxAgent(LLMClient())
        try:
            generated = agent.execute({"prompt": prompt, "schema_text": schema_text})
        except Exception as e:
            logger.error(f"DAX generation failed: {e}")
            raise RemoteExecutionError(f"Query generation failed: {e}") from e

        execution = self.execute(generated["query"], natural_language=prompt)
        return {"query": generated["query"], "explanation": generated.get("explanation", "")}, execution

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_execution(self, query_id: str) -> DaxQuery:
        key = parse_uuid(query_id)
        with self._session_factory() as db:
            row = db.query(DaxQuery).filter(DaxQuery.query_id == key).first() if key else None
            if row is None:
                raise NotFound(f"Query {query_id} not found")
            return row

    def history(self, limit: int = 20, offset: int = 0) -> Tuple[List[DaxQuery], int]:
        """Executions newest first, with the total count."""
        if limit < 1 or limit > 500:
            raise ValidationError("limit must be between 1 and 500")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        with self._session_factory() as db:
            total = db.query(DaxQuery).count()
            rows = db.query(DaxQuery).order_by(DaxQuery.query_pk.desc()).offset(offset).limit(limit).all()
            return rows, total
