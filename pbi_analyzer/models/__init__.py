"""SQLAlchemy ORM models."""

from pbi_analyzer.models.semantic_model import SemanticModel
from pbi_analyzer.models.analysis import AnalysisRun, Finding
from pbi_analyzer.models.fix_session import BulkFixSession, BulkFixSessionStep, FixSession, FixSessionStep
from pbi_analyzer.models.dax_query import DaxQuery

__all__ = [
    "SemanticModel",
    "AnalysisRun",
    "Finding",
    "FixSession",
    "FixSessionStep",
    "BulkFixSession",
    "BulkFixSessionStep",
    "DaxQuery",
]
