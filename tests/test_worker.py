"""Tests for the worker pool and startup recovery."""

import threading

from pbi_analyzer.models.analysis import AnalysisRun, Finding
from pbi_analyzer.models.dax_query import DaxQuery
from pbi_analyzer.models.fix_session import BulkFixSession, FixSession
from pbi_analyzer.models.semantic_model import SemanticModel
from pbi_analyzer.worker import INTERRUPTED, Worker, recover


def _seed_interrupted(session_factory):
    with session_factory() as db:
        db.add(SemanticModel(database_name="SalesModel", server_address="localhost:1234"))
        run = AnalysisRun(model_database_name="SalesModel", server_address="localhost:1234", status="COMPLETED", warning_count=0)
        stuck_run = AnalysisRun(model_database_name="SalesModel", server_address="localhost:1234", status="RUNNING")
        db.add_all([run, stuck_run])
        db.flush()
        finding = Finding(
            run_id=run.id,
            ordinal=0,
            rule_id="AVOID_FLOATING_POINT_DATA_TYPES",
            rule_name="Do not use floating point data types",
            category="Performance",
            severity=2,
            affected_object="'Sales'[Amount]",
            object_type="DataColumn",
            fix_status="IN_PROGRESS",
        )
        db.add(finding)
        db.flush()
        db.add(FixSession(finding_id=finding.id, status="RUNNING"))
        db.add(
            BulkFixSession(
                run_id=run.id,
                rule_id="AVOID_FLOATING_POINT_DATA_TYPES",
                status="PENDING",
                finding_ids=[finding.id],
                total_findings=1,
            )
        )
        db.add(DaxQuery(query_text="EVALUATE Sales", status="RUNNING"))
        db.commit()
        return run.id, stuck_run.id, finding.id


def test_recover_finalizes_interrupted_jobs(session_factory):
    run_id, stuck_run_id, finding_id = _seed_interrupted(session_factory)

    counts = recover(session_factory)

    assert counts == {"runs": 1, "fixSessions": 1, "bulkFixSessions": 1, "queries": 1, "findings": 1}
    with session_factory() as db:
        stuck = db.get(AnalysisRun, stuck_run_id)
        assert stuck.status == "FAILED"
        assert stuck.error_message == INTERRUPTED
        assert stuck.completed_at is not None

        assert db.query(FixSession).one().error_message == INTERRUPTED
        assert db.query(BulkFixSession).one().status == "FAILED"
        assert db.query(DaxQuery).one().status == "FAILED"

        finding = db.get(Finding, finding_id)
        assert finding.fix_status == "FAILED"
        assert finding.fix_summary == f"Fix failed: {INTERRUPTED}"
        assert db.get(AnalysisRun, run_id).warning_count == 1


def test_recover_is_noop_on_clean_database(session_factory):
    assert recover(session_factory) == {"runs": 0, "fixSessions": 0, "bulkFixSessions": 0, "queries": 0, "findings": 0}


def test_worker_shutdown_cancels_live_jobs():
    worker = Worker(max_threads=2, soft_timeout=0)
    gate = threading.Event()

    def work(context):
        gate.wait(5)
        context.checkpoint()
        return "done"

    record = worker.jobs.submit("test", work=work)
    threading.Timer(0.1, gate.set).start()
    worker.shutdown()

    record = worker.jobs.get(record.id)
    assert record.status.value == "FAILED"
    assert record.error in ("cancelled: shutting down", "cancelled before start")
