"""Semantic model catalog and cascading delete."""

import logging
from typing import Dict, List, Tuple

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from pbi_analyzer.exceptions import NotFound, ValidationError
from pbi_analyzer.jobs import JobManager
from pbi_analyzer.models.analysis import AnalysisRun, Finding
from pbi_analyzer.models.fix_session import BulkFixSession, BulkFixSessionStep, FixSession, FixSessionStep
from pbi_analyzer.models.semantic_model import SemanticModel

logger = logging.getLogger(__name__)


class ModelService:
    """Reads the model catalog and removes models with everything under them."""

    def __init__(self, jobs: JobManager, session_factory: sessionmaker):
        self.jobs = jobs
        self._session_factory = session_factory

    def list_models(self) -> List[Tuple[SemanticModel, int]]:
        """Models, most recently updated first, each with its run count."""
        with self._session_factory() as db:
            run_counts = (
                db.query(AnalysisRun.model_database_name, func.count(AnalysisRun.id).label("run_count"))
                .group_by(AnalysisRun.model_database_name)
                .subquery()
            )
            rows = (
                db.query(SemanticModel, func.coalesce(run_counts.c.run_count, 0))
                .outerjoin(run_counts, run_counts.c.model_database_name == SemanticModel.database_name)
                .order_by(SemanticModel.updated_at.desc(), SemanticModel.database_name)
                .all()
            )
            return [(model, int(count)) for model, count in rows]

    def get_model(self, database_name: str) -> SemanticModel:
        with self._session_factory() as db:
            model = db.get(SemanticModel, database_name)
            if model is None:
                raise NotFound(f"Model {database_name} not found")
            return model

    def get_model_runs(self, database_name: str, limit: int = 20, offset: int = 0) -> Tuple[List[AnalysisRun], int]:
        """
        Runs of one model, newest first.

        Args:
            database_name: Model database name
            limit: Page size (1-500)
            offset: Rows to skip

        Returns:
            (runs, total)
        """
        if limit < 1 or limit > 500:
            raise ValidationError("limit must be between 1 and 500")
        if offset < 0:
            raise ValidationError("offset must not be negative")

        self.get_model(database_name)
        with self._session_factory() as db:
            query = db.query(AnalysisRun).filter(AnalysisRun.model_database_name == database_name)
            total = query.count()
            runs = query.order_by(AnalysisRun.created_at.desc(), AnalysisRun.id).offset(offset).limit(limit).all()
            return runs, total

    def delete_model(self, database_name: str) -> Dict[str, int]:
        """
        Delete a model with its runs, findings, fix sessions, bulk fix
        sessions and their steps.

        Live jobs under the model are cancelled first. The rows are removed
        leaves first in a single transaction, so either all of them go or
        none do.

        Returns:
            Number of rows deleted per entity
        """
        self.get_model(database_name)

        with self._session_factory() as db:
            run_ids = db.query(AnalysisRun.id).filter(AnalysisRun.model_database_name == database_name)
            finding_ids = db.query(Finding.id).filter(Finding.run_id.in_(run_ids))
            session_ids = [
                sid for (sid,) in db.query(FixSession.id).filter(FixSession.finding_id.in_(finding_ids))
            ]
            bulk_session_ids = [
                sid for (sid,) in db.query(BulkFixSession.id).filter(BulkFixSession.run_id.in_(run_ids))
            ]
            live_run_ids = [rid for (rid,) in run_ids]

        for job_id in live_run_ids + session_ids + bulk_session_ids:
            if self.jobs.exists(job_id):
                self.jobs.cancel(job_id)

        with self._session_factory() as db:
            try:
                run_ids = db.query(AnalysisRun.id).filter(AnalysisRun.model_database_name == database_name)
                finding_ids = db.query(Finding.id).filter(Finding.run_id.in_(run_ids))
                session_ids_q = db.query(FixSession.id).filter(FixSession.finding_id.in_(finding_ids))
                bulk_ids_q = db.query(BulkFixSession.id).filter(BulkFixSession.run_id.in_(run_ids))

                counts = {
                    "steps": db.query(FixSessionStep)
                    .filter(FixSessionStep.session_id.in_(session_ids_q))
                    .delete(synchronize_session=False),
                    "fixSessions": db.query(FixSession)
                    .filter(FixSession.finding_id.in_(finding_ids))
                    .delete(synchronize_session=False),
                    "bulkFixSteps": db.query(BulkFixSessionStep)
                    .filter(BulkFixSessionStep.session_id.in_(bulk_ids_q))
                    .delete(synchronize_session=False),
                    "bulkFixSessions": db.query(BulkFixSession)
                    .filter(BulkFixSession.run_id.in_(run_ids))
                    .delete(synchronize_session=False),
                    "findings": db.query(Finding)
                    .filter(Finding.run_id.in_(run_ids))
                    .delete(synchronize_session=False),
                    "runs": db.query(AnalysisRun)
                    .filter(AnalysisRun.model_database_name == database_name)
                    .delete(synchronize_session=False),
                    "models": db.query(SemanticModel)
                    .filter(SemanticModel.database_name == database_name)
                    .delete(synchronize_session=False),
                }
                db.commit()
            except Exception:
                db.rollback()
                logger.error(f"Failed to delete model {database_name}; nothing was removed", exc_info=True)
                raise

        logger.info(f"Deleted model {database_name}: {counts}")
        return counts
