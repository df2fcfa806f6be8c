"""FastAPI dependencies resolving the services built at startup."""

from fastapi import Request

from pbi_analyzer.services.analysis_service import AnalysisService
from pbi_analyzer.services.dax_service import DaxService
from pbi_analyzer.services.fix_service import FixService
from pbi_analyzer.services.model_service import ModelService
from pbi_analyzer.services.rules_catalog import RuleCatalog


def get_analysis_service(request: Request) -> AnalysisService:
    return request.app.state.analysis_service


def get_fix_service(request: Request) -> FixService:
    return request.app.state.fix_service


def get_dax_service(request: Request) -> DaxService:
    return request.app.state.dax_service


def get_model_service(request: Request) -> ModelService:
    return request.app.state.model_service


def get_rule_catalog(request: Request) -> RuleCatalog:
    return request.app.state.rule_catalog
