"""FastAPI application entry point."""

import logging
import os

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

from pbi_analyzer.agents.dax_agent import DaxAgent
from pbi_analyzer.database import SessionLocal, engine, get_db
from pbi_analyzer.exceptions import (
    InvalidTransition,
    NotFound,
    RuleEvaluationError,
    UpstreamError,
    ValidationError,
)
from pbi_analyzer.routes import analysis, dax, findings, models, rules
from pbi_analyzer.services.analysis_service import AnalysisService
from pbi_analyzer.services.dax_service import DaxService
from pbi_analyzer.services.fix_service import FixService
from pbi_analyzer.services.llm_client import LLMClient
from pbi_analyzer.services.model_gateway import ModelGateway
from pbi_analyzer.services.model_service import ModelService
from pbi_analyzer.services.rules_catalog import RuleCatalog
from pbi_analyzer.worker import Worker, recover

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="PBI Analyzer",
    description="Best practice analyzer and AI autofix for tabular semantic models",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(analysis.router)
app.include_router(findings.router)
app.include_router(dax.router)
app.include_router(models.router)
app.include_router(rules.router)


# Domain errors -> HTTP
def _error_response(status_code: int):
    def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


app.add_exception_handler(ValidationError, _error_response(400))
app.add_exception_handler(NotFound, _error_response(404))
app.add_exception_handler(InvalidTransition, _error_response(409))
app.add_exception_handler(RuleEvaluationError, _error_response(422))
app.add_exception_handler(UpstreamError, _error_response(502))

REQUIRED_TABLES = (
    "semantic_models",
    "analysis_runs",
    "findings",
    "fix_sessions",
    "fix_session_steps",
    "bulk_fix_sessions",
    "bulk_fix_session_steps",
    "dax_queries",
)


def run_migrations() -> None:
    """Upgrade the schema unless every table already exists."""
    inspector = inspect(engine)
    if all(inspector.has_table(name) for name in REQUIRED_TABLES):
        logger.info("Database tables already exist, skipping migrations")
        return

    logger.info("Running database migrations...")
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed successfully")


@app.on_event("startup")
def startup_event():
    """Prepare the database and build the services."""
    logger.info("Starting application...")
    run_migrations()
    recover(SessionLocal)

    worker = Worker()
    catalog = RuleCatalog()
    gateway = ModelGateway()
    llm_client = LLMClient()

    app.state.worker = worker
    app.state.rule_catalog = catalog
    app.state.analysis_service = AnalysisService(worker.jobs, SessionLocal, catalog, gateway)
    app.state.fix_service = FixService(worker.jobs, SessionLocal, catalog, gateway, llm_client=llm_client)
    app.state.dax_service = DaxService(worker.jobs, SessionLocal, gateway, dax_agent=DaxAgent(llm_client))
    app.state.model_service = ModelService(worker.jobs, SessionLocal)
    logger.info("Application started")


@app.on_event("shutdown")
def shutdown_event():
    """Cancel live jobs and stop the worker pool."""
    logger.info("Shutting down application...")
    worker = getattr(app.state, "worker", None)
    if worker is not None:
        worker.shutdown()


@app.get("/health")
def health(db: Session = Depends(get_db)):
    """Health check endpoint."""
    db.execute(text("SELECT 1"))
    return {"status": "healthy"}


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "PBI Analyzer",
        "version": "0.1.0",
        "status": "running",
    }
