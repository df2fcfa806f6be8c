"""Pytest configuration and fixtures."""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from fakes import SAMPLE_RULES, FakeGateway, FakeLLM
from pbi_analyzer.database import Base, make_engine, make_session_factory
from pbi_analyzer.jobs import JobManager
from pbi_analyzer.services.analysis_service import AnalysisService
from pbi_analyzer.services.dax_service import DaxService
from pbi_analyzer.services.fix_service import FixService
from pbi_analyzer.services.model_service import ModelService
from pbi_analyzer.services.rules_catalog import RuleCatalog


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """Create a file-backed test database for each test; worker threads need their own connections."""
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(engine)

    yield make_session_factory(engine)

    engine.dispose()


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="test-job")
    yield pool
    pool.shutdown(wait=True, cancel_futures=True)


@pytest.fixture
def jobs(executor):
    return JobManager(executor=executor)


@pytest.fixture
def rules_file(tmp_path):
    path = tmp_path / "BPARules.json"
    path.write_text(json.dumps(SAMPLE_RULES), encoding="utf-8")
    return path


@pytest.fixture
def catalog(rules_file):
    return RuleCatalog(path=str(rules_file))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def analysis_service(jobs, session_factory, catalog, gateway):
    return AnalysisService(jobs, session_factory, catalog, gateway, default_server="localhost:1234")


@pytest.fixture
def fix_service(jobs, session_factory, catalog, gateway, llm):
    return FixService(jobs, session_factory, catalog, gateway, llm_client=llm, max_steps=40)


@pytest.fixture
def dax_service(jobs, session_factory, gateway):
    return DaxService(jobs, session_factory, gateway, poll_attempts=100, poll_interval=0.05)


@pytest.fixture
def model_service(jobs, session_factory):
    return ModelService(jobs, session_factory)


@pytest.fixture
def completed_run(analysis_service, jobs):
    """A COMPLETED analysis run over the sample model."""
    run = analysis_service.start_run("SalesModel")
    record = jobs.wait(run.id, timeout=10)
    assert record.is_terminal
    return analysis_service.get_run(run.id)
