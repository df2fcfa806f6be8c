"""Tests for the analysis run orchestrator."""

import json
import threading

import pytest

from fakes import BROKEN_RULE, SAMPLE_RULES
from pbi_analyzer.exceptions import InvalidTransition, ModelUnavailable, NotFound, ValidationError
from pbi_analyzer.models.analysis import AnalysisRun, Finding
from pbi_analyzer.models.semantic_model import SemanticModel
from pbi_analyzer.services.analysis_service import RECHECK_SUMMARY, AnalysisService


def test_start_run_creates_model_and_completes(analysis_service, jobs, session_factory):
    run = analysis_service.start_run("SalesModel")
    assert run.status in ("PENDING", "RUNNING", "COMPLETED")
    assert run.server_address == "localhost:1234"

    jobs.wait(run.id, timeout=10)
    run = analysis_service.get_run(run.id)

    assert run.status == "COMPLETED"
    assert run.completed_at is not None
    assert (run.error_count, run.warning_count, run.info_count) == (1, 2, 0)
    assert run.rules_evaluated == 2
    assert run.rule_errors == []

    with session_factory() as db:
        model = db.get(SemanticModel, "SalesModel")
        assert model.model_name == "SalesModel"
        findings = db.query(Finding).filter(Finding.run_id == run.id).order_by(Finding.ordinal).all()
        assert [f.affected_object for f in findings] == ["'Sales'[Amount]", "'Sales'[Margin]", "'Sales'[Safe Ratio]"]
        assert [f.ordinal for f in findings] == [0, 1, 2]
        assert all(f.fix_status == "UNFIXED" for f in findings)


def test_blank_database_name_rejected(analysis_service, session_factory):
    with pytest.raises(ValidationError):
        analysis_service.start_run("   ")

    with session_factory() as db:
        assert db.query(AnalysisRun).count() == 0


def test_metadata_failure_fails_run_without_findings(analysis_service, model_service, gateway, jobs, session_factory):
    """A failed metadata fetch leaves a FAILED run with zero findings that is still listed for the model."""
    gateway.metadata_error = ModelUnavailable("Cannot read model SalesModel on localhost:1234: connection refused")

    run = analysis_service.start_run("SalesModel")
    jobs.wait(run.id, timeout=10)
    run = analysis_service.get_run(run.id)

    assert run.status == "FAILED"
    assert "connection refused" in run.error_message
    assert run.completed_at is not None
    with session_factory() as db:
        assert db.query(Finding).filter(Finding.run_id == run.id).count() == 0

    runs, total = model_service.get_model_runs("SalesModel")
    assert total == 1
    assert runs[0].id == run.id
    assert runs[0].status == "FAILED"


def test_catalog_failure_fails_run(jobs, session_factory, gateway, tmp_path):
    from pbi_analyzer.services.rules_catalog import RuleCatalog

    service = AnalysisService(jobs, session_factory, RuleCatalog(path=str(tmp_path / "none.json")), gateway)
    run = service.start_run("SalesModel")
    jobs.wait(run.id, timeout=10)

    run = service.get_run(run.id)
    assert run.status == "FAILED"
    assert "Cannot read rule catalog" in run.error_message


def test_broken_rule_recorded_on_run(jobs, session_factory, gateway, tmp_path):
    from pbi_analyzer.services.rules_catalog import RuleCatalog

    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"Rules": SAMPLE_RULES + [BROKEN_RULE]}), encoding="utf-8")
    service = AnalysisService(jobs, session_factory, RuleCatalog(path=str(path)), gateway)

    run = service.start_run("SalesModel")
    jobs.wait(run.id, timeout=10)
    run = service.get_run(run.id)

    assert run.status == "COMPLETED"
    assert run.rules_evaluated == 3
    assert [e["ruleId"] for e in run.rule_errors] == ["BROKEN_RULE"]


def test_findings_hidden_until_completed(analysis_service, gateway, jobs):
    gateway.snapshot_gate = threading.Event()
    run = analysis_service.start_run("SalesModel")

    page = analysis_service.get_findings(run.id)
    assert page["findings"] == []
    assert page["total"] == 0
    assert page["summary"]["totalCount"] == 0

    gateway.snapshot_gate.set()
    jobs.wait(run.id, timeout=10)
    assert analysis_service.get_findings(run.id)["total"] == 3


def test_cancel_running_run(analysis_service, gateway, jobs):
    gateway.snapshot_gate = threading.Event()
    run = analysis_service.start_run("SalesModel")
    assert jobs.wait(run.id, timeout=0.2).status in ("PENDING", "RUNNING")

    analysis_service.cancel_run(run.id)
    gateway.snapshot_gate.set()
    jobs.wait(run.id, timeout=10)

    run = analysis_service.get_run(run.id)
    assert run.status == "FAILED"
    assert run.error_message in ("cancelled", "cancelled before start")
    assert analysis_service.get_findings(run.id)["total"] == 0


def test_cancel_completed_run_is_noop(analysis_service, completed_run):
    run = analysis_service.cancel_run(completed_run.id)

    assert run.status == "COMPLETED"
    assert run.completed_at == completed_run.completed_at


def test_get_findings_filter_sort_and_summary(analysis_service, completed_run):
    page = analysis_service.get_findings(completed_run.id, severity=2, sort_by="affectedObject", sort_order="desc")

    assert page["total"] == 2
    assert [f.affected_object for f in page["findings"]] == ["'Sales'[Margin]", "'Sales'[Amount]"]
    assert page["summary"] == {
        "totalCount": 3,
        "errorCount": 1,
        "warningCount": 2,
        "infoCount": 0,
        "fixedCount": 0,
        "unfixedCount": 3,
    }

    by_severity = analysis_service.get_findings(completed_run.id)
    assert by_severity["findings"][0].rule_id == "DAX_IFERROR"

    paged = analysis_service.get_findings(completed_run.id, sort_by="ordinal", sort_order="asc", limit=1, offset=1)
    assert [f.ordinal for f in paged["findings"]] == [1]
    assert paged["total"] == 3

    performance = analysis_service.get_findings(completed_run.id, category="Performance")
    assert performance["total"] == 2


@pytest.mark.parametrize(
    "kwargs",
    [
        {"sort_by": "name"},
        {"sort_order": "up"},
        {"severity": 5},
        {"fix_status": "DONE"},
        {"limit": 0},
        {"offset": -1},
    ],
)
def test_get_findings_rejects_bad_parameters(analysis_service, completed_run, kwargs):
    with pytest.raises(ValidationError):
        analysis_service.get_findings(completed_run.id, **kwargs)


def test_unknown_ids(analysis_service):
    with pytest.raises(NotFound):
        analysis_service.get_run("not-a-uuid")
    with pytest.raises(NotFound):
        analysis_service.get_run("00000000-0000-0000-0000-000000000000")
    with pytest.raises(NotFound):
        analysis_service.get_finding("00000000-0000-0000-0000-000000000000")


def test_list_runs_newest_first(analysis_service, jobs):
    first = analysis_service.start_run("SalesModel")
    jobs.wait(first.id, timeout=10)
    second = analysis_service.start_run("OtherModel")
    jobs.wait(second.id, timeout=10)

    runs, total = analysis_service.list_runs()

    assert total == 2
    assert [r.id for r in runs] == [second.id, first.id]


def _finding(analysis_service, run_id, affected_object):
    page = analysis_service.get_findings(run_id, sort_by="ordinal", sort_order="asc")
    return next(f for f in page["findings"] if f.affected_object == affected_object)


def test_recheck_resolves_fixed_finding(analysis_service, completed_run, gateway):
    amount = _finding(analysis_service, completed_run.id, "'Sales'[Amount]")
    gateway.metadata["model"]["tables"][0]["columns"][0]["dataType"] = "decimal"

    finding, resolved = analysis_service.recheck_finding(amount.id)

    assert resolved
    assert finding.fix_status == "FIXED"
    assert finding.fix_summary == RECHECK_SUMMARY
    run = analysis_service.get_run(completed_run.id)
    assert (run.error_count, run.warning_count) == (1, 1)

    summary = analysis_service.get_findings(completed_run.id)["summary"]
    assert summary["fixedCount"] == 1
    assert summary["unfixedCount"] == 2


def test_recheck_keeps_present_finding_unfixed(analysis_service, completed_run):
    margin = _finding(analysis_service, completed_run.id, "'Sales'[Margin]")

    finding, resolved = analysis_service.recheck_finding(margin.id)

    assert not resolved
    assert finding.fix_status == "UNFIXED"


def test_recheck_rejected_while_fix_in_progress(analysis_service, completed_run, session_factory):
    margin = _finding(analysis_service, completed_run.id, "'Sales'[Margin]")
    with session_factory() as db:
        db.get(Finding, margin.id).fix_status = "IN_PROGRESS"
        db.commit()

    with pytest.raises(InvalidTransition):
        analysis_service.recheck_finding(margin.id)


def test_recheck_propagates_upstream_failure(analysis_service, completed_run, gateway):
    margin = _finding(analysis_service, completed_run.id, "'Sales'[Margin]")
    gateway.metadata_error = ModelUnavailable("gateway down")

    with pytest.raises(ModelUnavailable):
        analysis_service.recheck_finding(margin.id)


def test_compare_runs(analysis_service, completed_run, gateway, jobs):
    columns = gateway.metadata["model"]["tables"][0]["columns"]
    columns[0]["dataType"] = "decimal"
    columns.append({"name": "Discount", "dataType": "double"})

    current = analysis_service.start_run("SalesModel")
    jobs.wait(current.id, timeout=10)

    diff = analysis_service.compare_runs(current.id, completed_run.id)

    assert diff["resolvedCount"] == 1
    assert diff["resolved"][0]["affectedObject"] == "'Sales'[Amount]"
    assert diff["newCount"] == 1
    assert diff["new"][0]["affectedObject"] == "'Sales'[Discount]"
    assert diff["recurringCount"] == 2
