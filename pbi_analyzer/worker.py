"""Background worker pool for analysis runs, fix sessions and queries."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional

from sqlalchemy.orm import sessionmaker

from pbi_analyzer.config import settings
from pbi_analyzer.database import utcnow
from pbi_analyzer.jobs import JobManager, JobStatus
from pbi_analyzer.models.analysis import AnalysisRun, Finding
from pbi_analyzer.models.dax_query import DaxQuery
from pbi_analyzer.models.fix_session import BulkFixSession, FixSession
from pbi_analyzer.services.analysis_service import recompute_counts

logger = logging.getLogger(__name__)

INTERRUPTED = "interrupted by restart"

_ACTIVE = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


class Worker:
    """Owns the thread pool that job work functions run on."""

    def __init__(self, max_threads: Optional[int] = None, soft_timeout: Optional[float] = None):
        """Initialize worker."""
        self.max_threads = max_threads or settings.WORKER_MAX_THREADS
        self.executor = ThreadPoolExecutor(max_workers=self.max_threads, thread_name_prefix="job")
        self.jobs = JobManager(
            executor=self.executor,
            soft_timeout=settings.JOB_SOFT_TIMEOUT if soft_timeout is None else soft_timeout,
        )
        logger.info(f"Worker pool started with {self.max_threads} threads")

    def shutdown(self, cancel_live: bool = True) -> None:
        """Stop accepting work, optionally cancelling live jobs first."""
        if cancel_live:
            for job_id in self.jobs.live_ids():
                self.jobs.cancel(job_id, reason="cancelled: shutting down")
        self.executor.shutdown(wait=True, cancel_futures=True)
        logger.info("Worker pool stopped")


def recover(session_factory: sessionmaker) -> Dict[str, int]:
    """
    Finalize jobs left non-terminal by a previous process.

    Job records live in memory, so rows still PENDING or RUNNING at startup
    can never finish. They are marked FAILED and findings stuck IN_PROGRESS
    are marked FAILED with them.

    Returns:
        Number of rows finalized per table
    """
    now = utcnow()
    with session_factory() as db:
        runs = db.query(AnalysisRun).filter(AnalysisRun.status.in_(_ACTIVE)).all()
        for run in runs:
            run.status = JobStatus.FAILED.value
            run.error_message = INTERRUPTED
            run.completed_at = now

        sessions = db.query(FixSession).filter(FixSession.status.in_(_ACTIVE)).all()
        for session in sessions:
            session.status = JobStatus.FAILED.value
            session.error_message = INTERRUPTED
            session.completed_at = now

        bulk_sessions = db.query(BulkFixSession).filter(BulkFixSession.status.in_(_ACTIVE)).all()
        for session in bulk_sessions:
            session.status = JobStatus.FAILED.value
            session.error_message = INTERRUPTED
            session.completed_at = now

        queries = db.query(DaxQuery).filter(DaxQuery.status.in_(_ACTIVE)).all()
        for query in queries:
            query.status = JobStatus.FAILED.value
            query.error_message = INTERRUPTED
            query.completed_at = now

        findings = db.query(Finding).filter(Finding.fix_status == "IN_PROGRESS").all()
        for finding in findings:
            finding.fix_status = "FAILED"
            finding.fix_summary = f"Fix failed: {INTERRUPTED}"
        db.flush()

        for run_id in {f.run_id for f in findings}:
            recompute_counts(db, run_id)
        db.commit()

    counts = {
        "runs": len(runs),
        "fixSessions": len(sessions),
        "bulkFixSessions": len(bulk_sessions),
        "queries": len(queries),
        "findings": len(findings),
    }
    if any(counts.values()):
        logger.warning(f"Recovered jobs interrupted by restart: {counts}")
    return counts
