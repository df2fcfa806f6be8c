"""Analysis run orchestrator: rule evaluation wrapped in the job lifecycle."""

import logging
from functools import partial
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from pbi_analyzer.config import settings
from pbi_analyzer.database import parse_uuid, utcnow
from pbi_analyzer.exceptions import InvalidTransition, NotFound, ValidationError
from pbi_analyzer.jobs import JobContext, JobManager, JobRecord, JobStatus
from pbi_analyzer.models.analysis import AnalysisRun, Finding
from pbi_analyzer.models.semantic_model import SemanticModel
from pbi_analyzer.services.model_gateway import ModelGateway
from pbi_analyzer.services.rule_engine import EvaluationOutcome, count_by_severity, evaluate, evaluate_rule, scope_types
from pbi_analyzer.services.rules_catalog import RuleCatalog

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    "severity": Finding.severity,
    "category": Finding.category,
    "ruleId": Finding.rule_id,
    "affectedObject": Finding.affected_object,
    "fixStatus": Finding.fix_status,
    "ordinal": Finding.ordinal,
}

FIX_STATUSES = ("UNFIXED", "IN_PROGRESS", "FIXED", "FAILED")
RECHECK_SUMMARY = "Verified fixed via recheck"


class AnalysisResult(NamedTuple):
    outcome: EvaluationOutcome
    model_name: str


def recompute_counts(db: Session, run_id: str) -> None:
    """Refresh a run's severity counts from its findings that are not FIXED."""
    run = db.get(AnalysisRun, run_id)
    if run is None:
        return
    severities = [
        severity
        for (severity,) in db.query(Finding.severity).filter(
            Finding.run_id == run_id, Finding.fix_status != "FIXED"
        )
    ]
    counts = count_by_severity(severities)
    run.error_count = counts["errorCount"]
    run.warning_count = counts["warningCount"]
    run.info_count = counts["infoCount"]


def _summary(db: Session, run_id: str) -> Dict[str, int]:
    rows = db.query(Finding.severity, Finding.fix_status).filter(Finding.run_id == run_id).all()
    counts = count_by_severity(severity for severity, _ in rows)
    return {
        "totalCount": len(rows),
        **counts,
        "fixedCount": sum(1 for _, status in rows if status == "FIXED"),
        "unfixedCount": sum(1 for _, status in rows if status == "UNFIXED"),
    }


def _empty_summary() -> Dict[str, int]:
    return {
        "totalCount": 0,
        "errorCount": 0,
        "warningCount": 0,
        "infoCount": 0,
        "fixedCount": 0,
        "unfixedCount": 0,
    }


class AnalysisService:
    """Starts, tracks and queries analysis runs."""

    KIND = "analysis"

    def __init__(
        self,
        jobs: JobManager,
        session_factory: sessionmaker,
        catalog: RuleCatalog,
        gateway: ModelGateway,
        default_server: Optional[str] = None,
    ):
        self.jobs = jobs
        self._session_factory = session_factory
        self.catalog = catalog
        self.gateway = gateway
        self.default_server = default_server or settings.DEFAULT_SERVER_ADDRESS

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_run(self, database_name: str, server_address: Optional[str] = None) -> AnalysisRun:
        """
        Start analyzing a model.

        Args:
            database_name: Model database name (created in the catalog if absent)
            server_address: Server hosting the model; defaults to DEFAULT_SERVER_ADDRESS

        Returns:
            The new run row
        """
        database_name = (database_name or "").strip()
        if not database_name:
            raise ValidationError("databaseName is required")
        server = (server_address or "").strip() or self.default_server

        with self._session_factory() as db:
            model = db.get(SemanticModel, database_name)
            if model is None:
                db.add(SemanticModel(database_name=database_name, server_address=server, model_name=database_name))
            else:
                model.server_address = server
                model.updated_at = utcnow()
            db.commit()

        record = self.jobs.submit(
            self.KIND,
            work=partial(self._analyze, database_name, server),
            on_transition=partial(self._persist, database_name, server),
        )
        logger.info(f"Queued analysis run {record.id} for {database_name} on {server}")
        return self.get_run(record.id)

    def cancel_run(self, run_id: str) -> AnalysisRun:
        run = self.get_run(run_id)
        if self.jobs.exists(run.id):
            self.jobs.cancel(run.id)
        return self.get_run(run.id)

    def _analyze(self, database_name: str, server: str, context: JobContext) -> AnalysisResult:
        rules = self.catalog.fetch()
        context.checkpoint()

        snapshot = self.gateway.snapshot(server, database_name)
        context.checkpoint()

        outcome = evaluate(snapshot, rules)
        context.checkpoint()
        return AnalysisResult(outcome=outcome, model_name=snapshot.name)

    def _persist(self, database_name: str, server: str, record: JobRecord) -> None:
        """Mirror a job transition into the analysis_runs table."""
        with self._session_factory() as db:
            if record.status == JobStatus.PENDING:
                db.add(
                    AnalysisRun(
                        id=record.id,
                        model_database_name=database_name,
                        server_address=server,
                        status=record.status.value,
                        created_at=record.created_at,
                    )
                )
                db.commit()
                return

            run = db.get(AnalysisRun, record.id)
            if run is None:
                logger.warning(f"Analysis run {record.id} no longer exists; dropping {record.status.value}")
                return

            run.status = record.status.value
            run.started_at = record.started_at
            run.completed_at = record.completed_at

            if record.status == JobStatus.COMPLETED:
                result: AnalysisResult = record.result
                self._store_findings(db, run, result.outcome)
                model = db.get(SemanticModel, database_name)
                if model is not None:
                    model.model_name = result.model_name
                    model.updated_at = utcnow()
            elif record.status == JobStatus.FAILED:
                run.error_message = record.error

            # Findings and final status become visible together
            db.commit()

    def _store_findings(self, db: Session, run: AnalysisRun, outcome: EvaluationOutcome) -> None:
        for ordinal, item in enumerate(outcome.findings):
            db.add(
                Finding(
                    run_id=run.id,
                    ordinal=ordinal,
                    rule_id=item.rule_id,
                    rule_name=item.rule_name,
                    category=item.category,
                    severity=item.severity,
                    description=item.description,
                    affected_object=item.affected_object,
                    object_type=item.object_type,
                    fix_status="UNFIXED",
                )
            )
        counts = outcome.counts
        run.error_count = counts["errorCount"]
        run.warning_count = counts["warningCount"]
        run.info_count = counts["infoCount"]
        run.rules_evaluated = outcome.rules_evaluated
        run.rule_errors = [{"ruleId": e.rule_id, "message": e.message} for e in outcome.errors]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> AnalysisRun:
        key = parse_uuid(run_id)
        with self._session_factory() as db:
            run = db.get(AnalysisRun, key) if key else None
            if run is None:
                raise NotFound(f"Analysis run {run_id} not found")
            return run

    def list_runs(self, limit: int = 20, offset: int = 0) -> Tuple[List[AnalysisRun], int]:
        """Runs newest first, with the total count."""
        _check_page(limit, offset)
        with self._session_factory() as db:
            total = db.query(AnalysisRun).count()
            runs = (
                db.query(AnalysisRun)
                .order_by(AnalysisRun.created_at.desc(), AnalysisRun.id)
                .offset(offset)
                .limit(limit)
                .all()
            )
            return runs, total

    def get_findings(
        self,
        run_id: str,
        severity: Optional[int] = None,
        category: Optional[str] = None,
        fix_status: Optional[str] = None,
        sort_by: str = "severity",
        sort_order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Filtered, sorted page of a run's findings plus a summary over all of them.

        Runs that have not COMPLETED have no visible findings.
        """
        run = self.get_run(run_id)
        if sort_by not in SORT_FIELDS:
            raise ValidationError(f"sortBy must be one of {', '.join(SORT_FIELDS)}")
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sortOrder must be 'asc' or 'desc'")
        if severity is not None and severity not in (1, 2, 3):
            raise ValidationError("severity must be 1, 2 or 3")
        if fix_status is not None and fix_status not in FIX_STATUSES:
            raise ValidationError(f"fixStatus must be one of {', '.join(FIX_STATUSES)}")
        _check_page(limit, offset)

        if run.status != JobStatus.COMPLETED.value:
            return {"findings": [], "summary": _empty_summary(), "total": 0}

        with self._session_factory() as db:
            query = db.query(Finding).filter(Finding.run_id == run.id)
            if severity is not None:
                query = query.filter(Finding.severity == severity)
            if category:
                query = query.filter(Finding.category == category)
            if fix_status:
                query = query.filter(Finding.fix_status == fix_status)

            total = query.count()
            column = SORT_FIELDS[sort_by]
            order = column.asc() if sort_order == "asc" else column.desc()
            findings = query.order_by(order, Finding.ordinal).offset(offset).limit(limit).all()

            return {"findings": findings, "summary": _summary(db, run.id), "total": total}

    def get_finding(self, finding_id: str) -> Finding:
        key = parse_uuid(finding_id)
        with self._session_factory() as db:
            finding = db.get(Finding, key) if key else None
            if finding is None:
                raise NotFound(f"Finding {finding_id} not found")
            return finding

    def recheck_finding(self, finding_id: str) -> Tuple[Finding, bool]:
        """
        Re-evaluate a finding's rule against a fresh snapshot of its model.

        Returns:
            (updated finding, resolved)
        """
        finding = self.get_finding(finding_id)
        if finding.fix_status == "IN_PROGRESS":
            raise InvalidTransition(f"Finding {finding.id} has a fix in progress")

        run = self.get_run(finding.run_id)
        rule = self.catalog.get_rule(finding.rule_id)
        if rule is None:
            raise ValidationError(f"Rule {finding.rule_id} is no longer in the catalog")

        snapshot = self.gateway.snapshot(run.server_address, run.model_database_name)
        results = evaluate_rule(rule, snapshot.iter_objects(scope_types(rule)))
        still_present = any(r.affected_object == finding.affected_object for r in results)

        with self._session_factory() as db:
            row = db.get(Finding, finding.id)
            if row is None:
                raise NotFound(f"Finding {finding_id} not found")
            if still_present:
                row.fix_status = "UNFIXED"
            else:
                row.fix_status = "FIXED"
                if not row.fix_summary:
                    row.fix_summary = RECHECK_SUMMARY
            row.updated_at = utcnow()
            db.flush()
            recompute_counts(db, row.run_id)
            db.commit()

        logger.info(f"Rechecked finding {finding.id}: {'still present' if still_present else 'resolved'}")
        return self.get_finding(finding.id), not still_present

    def compare_runs(self, current_run_id: str, previous_run_id: str) -> Dict[str, Any]:
        """Diff two runs keyed by (ruleId, affectedObject)."""
        current = self.get_run(current_run_id)
        previous = self.get_run(previous_run_id)

        with self._session_factory() as db:
            current_findings = db.query(Finding).filter(Finding.run_id == current.id).order_by(Finding.ordinal).all()
            previous_findings = db.query(Finding).filter(Finding.run_id == previous.id).order_by(Finding.ordinal).all()

        def key(f: Finding) -> Tuple[str, str]:
            return (f.rule_id, f.affected_object)

        current_keys = {key(f) for f in current_findings}
        previous_keys = {key(f) for f in previous_findings}

        resolved = [f for f in previous_findings if key(f) not in current_keys]
        new = [f for f in current_findings if key(f) not in previous_keys]
        recurring = [f for f in current_findings if key(f) in previous_keys]

        def brief(f: Finding) -> Dict[str, str]:
            return {"ruleId": f.rule_id, "ruleName": f.rule_name, "affectedObject": f.affected_object}

        return {
            "resolvedCount": len(resolved),
            "newCount": len(new),
            "recurringCount": len(recurring),
            "resolved": [brief(f) for f in resolved],
            "new": [brief(f) for f in new],
            "recurring": [brief(f) for f in recurring],
        }


def _check_page(limit: int, offset: int) -> None:
    if limit < 1 or limit > 500:
        raise ValidationError("limit must be between 1 and 500")
    if offset < 0:
        raise ValidationError("offset must not be negative")
