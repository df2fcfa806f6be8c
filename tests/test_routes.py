"""HTTP surface tests with the services swapped in through dependency overrides."""

import threading

import pytest
from fastapi.testclient import TestClient

from pbi_analyzer.database import get_db
from pbi_analyzer.deps import (
    get_analysis_service,
    get_dax_service,
    get_fix_service,
    get_model_service,
    get_rule_catalog,
)
from pbi_analyzer.exceptions import ModelUnavailable
from pbi_analyzer.main import app


@pytest.fixture
def client(session_factory, analysis_service, fix_service, dax_service, model_service, catalog):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_analysis_service] = lambda: analysis_service
    app.dependency_overrides[get_fix_service] = lambda: fix_service
    app.dependency_overrides[get_dax_service] = lambda: dax_service
    app.dependency_overrides[get_model_service] = lambda: model_service
    app.dependency_overrides[get_rule_catalog] = lambda: catalog

    # Not used as a context manager: startup would build the real services
    yield TestClient(app)

    app.dependency_overrides.clear()


def _completed_run(client, jobs):
    response = client.post("/analysis/runs", json={"databaseName": "SalesModel"})
    assert response.status_code == 200
    run_id = response.json()["id"]
    jobs.wait(run_id, timeout=10)
    return run_id


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_run_lifecycle_over_http(client, jobs):
    response = client.post("/analysis/runs", json={"databaseName": "SalesModel"})
    assert response.status_code == 200
    body = response.json()
    assert body["modelDatabaseName"] == "SalesModel"
    assert body["serverAddress"] == "localhost:1234"

    jobs.wait(body["id"], timeout=10)
    run = client.get(f"/analysis/runs/{body['id']}").json()
    assert run["status"] == "COMPLETED"
    assert (run["errorCount"], run["warningCount"], run["infoCount"]) == (1, 2, 0)

    listing = client.get("/analysis/runs").json()
    assert listing["total"] == 1


def test_error_mapping(client, jobs):
    assert client.post("/analysis/runs", json={"databaseName": "  "}).status_code == 400
    assert client.get("/analysis/runs/not-a-run").status_code == 404

    run_id = _completed_run(client, jobs)
    response = client.get(f"/analysis/runs/{run_id}/findings", params={"sortBy": "bogus"})
    assert response.status_code == 400
    assert "sortBy" in response.json()["detail"]


def test_findings_page(client, jobs):
    run_id = _completed_run(client, jobs)

    body = client.get(
        f"/analysis/runs/{run_id}/findings", params={"severity": 2, "sortBy": "ordinal", "sortOrder": "asc"}
    ).json()

    assert body["total"] == 2
    assert [f["affectedObject"] for f in body["findings"]] == ["'Sales'[Amount]", "'Sales'[Margin]"]
    assert body["findings"][0]["fixStatus"] == "UNFIXED"
    assert body["summary"]["totalCount"] == 3
    assert body["summary"]["unfixedCount"] == 3


def test_fix_session_over_http(client, jobs, llm):
    run_id = _completed_run(client, jobs)
    finding = client.get(f"/analysis/runs/{run_id}/findings", params={"sortBy": "ordinal", "sortOrder": "asc"}).json()[
        "findings"
    ][0]

    gate = threading.Event()
    llm.gates[1] = gate
    first = client.post(f"/findings/{finding['id']}/fix")
    assert first.status_code == 200
    second = client.post(f"/findings/{finding['id']}/fix")
    assert second.status_code == 409

    gate.set()
    session_id = first.json()["id"]
    jobs.wait(session_id, timeout=10)

    steps = client.get(f"/fix-sessions/{session_id}/steps", params={"after": 0}).json()
    assert steps["status"] == "COMPLETED"
    assert [s["stepNumber"] for s in steps["steps"]] == [1, 2]
    assert steps["steps"][-1]["eventType"] == "message"

    detail = client.get(f"/findings/{finding['id']}").json()
    assert detail["fixStatus"] == "FIXED"
    assert [s["id"] for s in detail["fixSessions"]] == [session_id]
    assert client.get(f"/findings/{finding['id']}/fix/session").json()["id"] == session_id


def test_recheck_upstream_failure_is_bad_gateway(client, jobs, gateway):
    run_id = _completed_run(client, jobs)
    finding_id = client.get(f"/analysis/runs/{run_id}/findings").json()["findings"][0]["id"]
    gateway.metadata_error = ModelUnavailable("gateway down")

    response = client.post(f"/findings/{finding_id}/recheck")

    assert response.status_code == 502
    assert response.json()["detail"] == "gateway down"


def test_compare_over_http(client, jobs):
    first = _completed_run(client, jobs)
    second = _completed_run(client, jobs)

    body = client.get(f"/analysis/runs/{second}/compare/{first}").json()

    assert body["recurringCount"] == 3
    assert body["newCount"] == 0
    assert body["resolved"] == []


def test_dax_execute_and_history(client):
    response = client.post("/dax/execute", json={"queryText": "EVALUATE Sales"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "COMPLETED"
    assert body["rowCount"] == 2
    assert client.get(f"/dax/{body['id']}").json()["queryText"] == "EVALUATE Sales"

    history = client.get("/dax/history").json()
    assert history["total"] == 1
    assert history["queries"][0]["id"] == body["id"]


def test_dax_validate(client, gateway):
    gateway.validation = {"valid": False, "error": "Unexpected token"}

    body = client.post("/dax/validate", json={"queryText": "EVALUATE"}).json()

    assert body == {"valid": False, "error": "Unexpected token"}


def test_models_and_delete(client, jobs):
    _completed_run(client, jobs)

    models = client.get("/models").json()["models"]
    assert models[0]["databaseName"] == "SalesModel"
    assert models[0]["runCount"] == 1

    detail = client.get("/models/SalesModel").json()
    assert len(detail["runs"]) == 1

    deleted = client.delete("/models/SalesModel").json()
    assert deleted["deleted"]["runs"] == 1
    assert deleted["deleted"]["findings"] == 3
    assert client.get("/models/SalesModel").status_code == 404


def test_rules_filter(client):
    body = client.get("/rules", params={"category": "Performance"}).json()

    assert body["total"] == 1
    assert body["rules"][0]["id"] == "AVOID_FLOATING_POINT_DATA_TYPES"
    assert body["rules"][0]["hasFixExpression"] is True


def test_bulk_fix_over_http(client, jobs):
    run_id = _completed_run(client, jobs)

    response = client.post(f"/analysis/runs/{run_id}/rules/AVOID_FLOATING_POINT_DATA_TYPES/fix")
    assert response.status_code == 200
    body = response.json()
    assert body["ruleId"] == "AVOID_FLOATING_POINT_DATA_TYPES"
    assert body["totalFindings"] == 2
    jobs.wait(body["id"], timeout=10)

    session = client.get(f"/bulk-fix-sessions/{body['id']}").json()
    assert session["status"] == "COMPLETED"
    assert session["fixedCount"] == 2

    steps = client.get(f"/bulk-fix-sessions/{body['id']}/steps", params={"after": 0}).json()
    assert steps["steps"][-1]["eventType"] == "message"

    latest = client.get(f"/analysis/runs/{run_id}/rules/AVOID_FLOATING_POINT_DATA_TYPES/fix/session").json()
    assert latest["id"] == body["id"]

    again = client.post(f"/analysis/runs/{run_id}/rules/AVOID_FLOATING_POINT_DATA_TYPES/fix")
    assert again.status_code == 404
