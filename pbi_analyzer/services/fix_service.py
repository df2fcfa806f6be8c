"""Autofix session orchestrator."""

import logging
import threading
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from pbi_analyzer.agents.fix_agent import BulkFixAgent, FixAgent
from pbi_analyzer.config import settings
from pbi_analyzer.database import parse_uuid, utcnow
from pbi_analyzer.exceptions import InvalidTransition, NotFound, SessionAlreadyActive
from pbi_analyzer.jobs import JobContext, JobManager, JobRecord, JobStatus, describe_error
from pbi_analyzer.models.analysis import AnalysisRun, Finding
from pbi_analyzer.models.fix_session import BulkFixSession, BulkFixSessionStep, FixSession, FixSessionStep
from pbi_analyzer.services.analysis_service import recompute_counts
from pbi_analyzer.services.llm_client import LLMClient
from pbi_analyzer.services.model_gateway import ModelGateway
from pbi_analyzer.services.rules_catalog import RuleCatalog
from pbi_analyzer.services.step_log import StepLog, read_steps

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)

# Finding fix statuses a bulk session picks up
OPEN_FIX_STATUSES = ("UNFIXED", "FAILED")

AgentFactory = Callable[[StepLog, JobContext], Any]


class FixService:
    """
    Runs AI autofix sessions against findings.

    A finding's fix status moves in lockstep with its session: RUNNING sets
    it IN_PROGRESS, COMPLETED sets it FIXED and FAILED sets it FAILED.

    Bulk sessions fix every open finding of one rule in one run with a single
    agent loop. Their findings are IN_PROGRESS from the moment the session is
    queued and end FIXED or FAILED together.
    """

    KIND = "fix"
    BULK_KIND = "bulk_fix"

    def __init__(
        self,
        jobs: JobManager,
        session_factory: sessionmaker,
        catalog: RuleCatalog,
        gateway: ModelGateway,
        llm_client: Optional[LLMClient] = None,
        agent_factory: Optional[AgentFactory] = None,
        bulk_agent_factory: Optional[AgentFactory] = None,
        max_steps: Optional[int] = None,
    ):
        self.jobs = jobs
        self._session_factory = session_factory
        self.catalog = catalog
        self.gateway = gateway
        self.llm = llm_client
        self.max_steps = max_steps or settings.FIX_MAX_STEPS
        self._agent_factory = agent_factory or self._default_agent
        self._bulk_agent_factory = bulk_agent_factory or self._default_bulk_agent
        # Serializes the active-session check with session creation
        self._start_lock = threading.Lock()

    def _default_agent(self, steps: StepLog, context: JobContext) -> FixAgent:
        return FixAgent(
            self.llm or LLMClient(),
            self.gateway,
            steps,
            context,
            max_steps=self.max_steps,
        )

    def _default_bulk_agent(self, steps: StepLog, context: JobContext) -> BulkFixAgent:
        return BulkFixAgent(
            self.llm or LLMClient(),
            self.gateway,
            steps,
            context,
            max_steps=self.max_steps,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_fix(self, finding_id: str) -> FixSession:
        """
        Start an autofix session for a finding.

        Raises:
            NotFound: Unknown finding
            InvalidTransition: The finding is already fixed
            SessionAlreadyActive: A PENDING or RUNNING session exists
        """
        key = parse_uuid(finding_id)
        with self._start_lock:
            with self._session_factory() as db:
                finding = db.get(Finding, key) if key else None
                if finding is None:
                    raise NotFound(f"Finding {finding_id} not found")
                if finding.fix_status == "FIXED":
                    raise InvalidTransition(f"Finding {finding_id} is already fixed")
                if finding.fix_status == "IN_PROGRESS":
                    raise SessionAlreadyActive(f"Finding {finding_id} is already being fixed")

                active = (
                    db.query(FixSession.id)
                    .filter(FixSession.finding_id == finding.id, FixSession.status.in_(ACTIVE_STATUSES))
                    .first()
                )
                if active is not None:
                    raise SessionAlreadyActive(
                        f"Finding {finding_id} already has an active fix session {active[0]}"
                    )

                run = db.get(AnalysisRun, finding.run_id)
                payload = {
                    "finding_id": finding.id,
                    "rule_id": finding.rule_id,
                    "rule_name": finding.rule_name,
                    "description": finding.description or "",
                    "affected_object": finding.affected_object,
                    "object_type": finding.object_type,
                    "server_address": run.server_address,
                    "database_name": run.model_database_name,
                }

            record = self.jobs.submit(
                self.KIND,
                work=partial(self._fix, payload),
                on_transition=partial(self._persist, finding.id),
            )

        logger.info(f"Queued fix session {record.id} for finding {finding.id} ({finding.rule_id})")
        return self.get_session(record.id)

    def cancel_session(self, session_id: str) -> FixSession:
        session = self.get_session(session_id)
        if self.jobs.exists(session.id):
            self.jobs.cancel(session.id)
        return self.get_session(session.id)

    def _fix(self, payload: Dict[str, Any], context: JobContext) -> Dict[str, Any]:
        steps = StepLog(self._session_factory, context.job_id)
        try:
            rule = self.catalog.get_rule(payload["rule_id"])
            if rule is not None and rule.has_fix_expression:
                payload = {**payload, "fix_hint": rule.fix_expression}
            context.checkpoint()

            agent = self._agent_factory(steps, context)
            result = agent.execute(payload)
            context.checkpoint()

            steps.append("message", result["summary"])
            return result
        except Exception as e:
            # Covers cancellation and the step limit as well as tool failures
            self._record_error(steps, describe_error(e))
            raise

    def _record_error(self, steps: StepLog, message: str) -> None:
        """Append the single terminating error step."""
        try:
            steps.append("error", message)
        except Exception as e:
            logger.warning(f"Could not record error step for session {steps.session_id}: {e}")

    def _persist(self, finding_id: str, record: JobRecord) -> None:
        """Mirror a session transition and keep the finding in lockstep."""
        with self._session_factory() as db:
            if record.status == JobStatus.PENDING:
                db.add(
                    FixSession(
                        id=record.id,
                        finding_id=finding_id,
                        status=record.status.value,
                        created_at=record.created_at,
                    )
                )
                db.commit()
                return

            session = db.get(FixSession, record.id)
            finding = db.get(Finding, finding_id)
            if session is None or finding is None:
                logger.warning(f"Fix session {record.id} no longer exists; dropping {record.status.value}")
                return

            session.status = record.status.value
            session.started_at = record.started_at
            session.completed_at = record.completed_at

            if record.status == JobStatus.RUNNING:
                finding.fix_status = "IN_PROGRESS"
            elif record.status == JobStatus.COMPLETED:
                summary = (record.result or {}).get("summary")
                session.summary = summary
                finding.fix_status = "FIXED"
                finding.fix_summary = summary
            elif record.status == JobStatus.FAILED:
                session.error_message = record.error
                finding.fix_status = "FAILED"
                finding.fix_summary = f"Fix failed: {record.error}"
            finding.updated_at = utcnow()

            db.flush()
            recompute_counts(db, finding.run_id)
            db.commit()

    # ------------------------------------------------------------------
    # Bulk sessions
    # ------------------------------------------------------------------

    def start_bulk_fix(self, run_id: str, rule_id: str) -> BulkFixSession:
        """
        Start one autofix session for every open finding of a rule in a run.

        Findings that are UNFIXED or FAILED and have no active single-finding
        session are picked up, in ordinal order.

        Raises:
            NotFound: Unknown run, or no open findings for the rule
            SessionAlreadyActive: A bulk session for this rule and run is active
        """
        key = parse_uuid(run_id)
        with self._start_lock:
            with self._session_factory() as db:
                run = db.get(AnalysisRun, key) if key else None
                if run is None:
                    raise NotFound(f"Analysis run {run_id} not found")

                active = (
                    db.query(BulkFixSession.id)
                    .filter(
                        BulkFixSession.run_id == run.id,
                        BulkFixSession.rule_id == rule_id,
                        BulkFixSession.status.in_(ACTIVE_STATUSES),
                    )
                    .first()
                )
                if active is not None:
                    raise SessionAlreadyActive(f"Rule {rule_id} already has an active bulk fix session {active[0]}")

                busy = db.query(FixSession.finding_id).filter(FixSession.status.in_(ACTIVE_STATUSES))
                findings = (
                    db.query(Finding)
                    .filter(
                        Finding.run_id == run.id,
                        Finding.rule_id == rule_id,
                        Finding.fix_status.in_(OPEN_FIX_STATUSES),
                        ~Finding.id.in_(busy),
                    )
                    .order_by(Finding.ordinal)
                    .all()
                )
                if not findings:
                    raise NotFound(f"No unfixed findings for rule {rule_id} in run {run_id}")

                first = findings[0]
                payload = {
                    "rule_id": rule_id,
                    "rule_name": first.rule_name,
                    "description": first.description or "",
                    "objects": [
                        {"finding_id": f.id, "affected_object": f.affected_object, "object_type": f.object_type}
                        for f in findings
                    ],
                    "server_address": run.server_address,
                    "database_name": run.model_database_name,
                }
                finding_ids = [f.id for f in findings]

            record = self.jobs.submit(
                self.BULK_KIND,
                work=partial(self._bulk_fix, payload),
                on_transition=partial(self._persist_bulk, run.id, rule_id, finding_ids),
            )

        logger.info(f"Queued bulk fix session {record.id} for rule {rule_id} ({len(finding_ids)} findings)")
        return self.get_bulk_session(record.id)

    def cancel_bulk_session(self, session_id: str) -> BulkFixSession:
        session = self.get_bulk_session(session_id)
        if self.jobs.exists(session.id):
            self.jobs.cancel(session.id)
        return self.get_bulk_session(session.id)

    def _bulk_fix(self, payload: Dict[str, Any], context: JobContext) -> Dict[str, Any]:
        steps = StepLog(self._session_factory, context.job_id, BulkFixSession, BulkFixSessionStep)
        try:
            rule = self.catalog.get_rule(payload["rule_id"])
            if rule is not None and rule.has_fix_expression:
                payload = {**payload, "fix_hint": rule.fix_expression}
            context.checkpoint()

            agent = self._bulk_agent_factory(steps, context)
            result = agent.execute(payload)
            context.checkpoint()

            steps.append("message", result["summary"])
            return result
        except Exception as e:
            self._record_error(steps, describe_error(e))
            raise

    def _persist_bulk(self, run_id: str, rule_id: str, finding_ids: List[str], record: JobRecord) -> None:
        """Mirror a bulk session transition onto its row and its findings."""
        with self._session_factory() as db:
            findings = db.query(Finding).filter(Finding.id.in_(finding_ids)).all()

            if record.status == JobStatus.PENDING:
                db.add(
                    BulkFixSession(
                        id=record.id,
                        run_id=run_id,
                        rule_id=rule_id,
                        status=record.status.value,
                        finding_ids=finding_ids,
                        total_findings=len(finding_ids),
                        created_at=record.created_at,
                    )
                )
                for finding in findings:
                    finding.fix_status = "IN_PROGRESS"
                    finding.updated_at = utcnow()
                db.flush()
                recompute_counts(db, run_id)
                db.commit()
                return

            session = db.get(BulkFixSession, record.id)
            if session is None:
                logger.warning(f"Bulk fix session {record.id} no longer exists; dropping {record.status.value}")
                return

            session.status = record.status.value
            session.started_at = record.started_at
            session.completed_at = record.completed_at

            pending = [f for f in findings if f.fix_status == "IN_PROGRESS"]
            if record.status == JobStatus.COMPLETED:
                summary = (record.result or {}).get("summary")
                session.summary = summary
                for finding in pending:
                    finding.fix_status = "FIXED"
                    finding.fix_summary = summary
                    finding.updated_at = utcnow()
                session.fixed_count = len(pending)
                session.failed_count = session.total_findings - len(pending)
            elif record.status == JobStatus.FAILED:
                session.error_message = record.error
                for finding in pending:
                    finding.fix_status = "FAILED"
                    finding.fix_summary = f"Bulk fix failed: {record.error}"
                    finding.updated_at = utcnow()
                session.failed_count = len(pending)

            db.flush()
            recompute_counts(db, run_id)
            db.commit()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> FixSession:
        key = parse_uuid(session_id)
        with self._session_factory() as db:
            session = db.get(FixSession, key) if key else None
            if session is None:
                raise NotFound(f"Fix session {session_id} not found")
            return session

    def list_sessions_for_finding(self, finding_id: str) -> List[FixSession]:
        """Sessions of a finding, newest first."""
        key = parse_uuid(finding_id)
        with self._session_factory() as db:
            if key is None or db.get(Finding, key) is None:
                raise NotFound(f"Finding {finding_id} not found")
            return (
                db.query(FixSession)
                .filter(FixSession.finding_id == key)
                .order_by(FixSession.created_at.desc(), FixSession.id)
                .all()
            )

    def get_latest_session_for_finding(self, finding_id: str) -> FixSession:
        sessions = self.list_sessions_for_finding(finding_id)
        if not sessions:
            raise NotFound(f"Finding {finding_id} has no fix session")
        return sessions[0]

    def get_steps(self, session_id: str, after: int = 0) -> List[FixSessionStep]:
        """Steps numbered above ``after``, in order."""
        session = self.get_session(session_id)
        with self._session_factory() as db:
            return read_steps(db, session.id, after=max(after, 0))

    def get_bulk_session(self, session_id: str) -> BulkFixSession:
        key = parse_uuid(session_id)
        with self._session_factory() as db:
            session = db.get(BulkFixSession, key) if key else None
            if session is None:
                raise NotFound(f"Bulk fix session {session_id} not found")
            return session

    def list_bulk_sessions(self, run_id: str, rule_id: str) -> List[BulkFixSession]:
        """Bulk sessions of one rule in one run, newest first."""
        key = parse_uuid(run_id)
        with self._session_factory() as db:
            if key is None or db.get(AnalysisRun, key) is None:
                raise NotFound(f"Analysis run {run_id} not found")
            return (
                db.query(BulkFixSession)
                .filter(BulkFixSession.run_id == key, BulkFixSession.rule_id == rule_id)
                .order_by(BulkFixSession.created_at.desc(), BulkFixSession.id)
                .all()
            )

    def get_latest_bulk_session(self, run_id: str, rule_id: str) -> BulkFixSession:
        sessions = self.list_bulk_sessions(run_id, rule_id)
        if not sessions:
            raise NotFound(f"Rule {rule_id} has no bulk fix session in run {run_id}")
        return sessions[0]

    def get_bulk_steps(self, session_id: str, after: int = 0) -> List[BulkFixSessionStep]:
        session = self.get_bulk_session(session_id)
        with self._session_factory() as db:
            return read_steps(db, session.id, after=max(after, 0), step_model=BulkFixSessionStep)
