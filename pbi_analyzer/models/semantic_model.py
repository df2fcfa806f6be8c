"""Semantic model catalog entry."""

from sqlalchemy import Column, DateTime, Text
from sqlalchemy.orm import relationship

from pbi_analyzer.database import Base, utcnow


class SemanticModel(Base):
    """A tabular model known to the analyzer, keyed by database name."""

    __tablename__ = "semantic_models"

    database_name = Column(Text, primary_key=True)
    server_address = Column(Text, nullable=False)
    model_name = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    runs = relationship(
        "AnalysisRun",
        back_populates="model",
        order_by="AnalysisRun.created_at.desc()",
        passive_deletes=True,
    )
