"""Analysis run and finding models."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from pbi_analyzer.database import Base, utcnow


class AnalysisRun(Base):
    """One evaluation of the rule catalog against a model snapshot."""

    __tablename__ = "analysis_runs"

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    model_database_name = Column(
        Text, ForeignKey("semantic_models.database_name", ondelete="CASCADE"), nullable=False
    )
    server_address = Column(Text, nullable=False)
    status = Column(Text, nullable=False)  # 'PENDING', 'RUNNING', 'COMPLETED', 'FAILED'
    error_message = Column(Text)
    error_count = Column(Integer, nullable=False, default=0)
    warning_count = Column(Integer, nullable=False, default=0)
    info_count = Column(Integer, nullable=False, default=0)
    rules_evaluated = Column(Integer, nullable=False, default=0)
    rule_errors = Column(JSON)  # [{ruleId, message}] for rules skipped during evaluation
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    model = relationship("SemanticModel", back_populates="runs")
    findings = relationship(
        "Finding", back_populates="run", order_by="Finding.ordinal", passive_deletes=True
    )

    __table_args__ = (
        Index("idx_analysis_runs_model", "model_database_name"),
        Index("idx_analysis_runs_created_at", "created_at"),
    )


class Finding(Base):
    """One rule violation detected during a run."""

    __tablename__ = "findings"

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id = Column(Uuid(as_uuid=False), ForeignKey("analysis_runs.id", ondelete="CASCADE"), nullable=False)
    ordinal = Column(Integer, nullable=False)  # Evaluation order within the run
    rule_id = Column(Text, nullable=False)
    rule_name = Column(Text, nullable=False)
    category = Column(Text, nullable=False)
    severity = Column(Integer, nullable=False)  # 1=info, 2=warning, 3=error
    description = Column(Text)
    affected_object = Column(Text, nullable=False)
    object_type = Column(Text, nullable=False)
    fix_status = Column(Text, nullable=False, default="UNFIXED")  # 'UNFIXED', 'IN_PROGRESS', 'FIXED', 'FAILED'
    fix_summary = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    run = relationship("AnalysisRun", back_populates="findings")

    __table_args__ = (
        UniqueConstraint("run_id", "ordinal", name="uq_findings_run_ordinal"),
        Index("idx_findings_run_id", "run_id"),
    )
