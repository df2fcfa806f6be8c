"""Autofix session and step trail models."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from pbi_analyzer.database import Base, utcnow


class FixSession(Base):
    """An AI-driven attempt to resolve one finding."""

    __tablename__ = "fix_sessions"

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    finding_id = Column(Uuid(as_uuid=False), ForeignKey("findings.id", ondelete="CASCADE"), nullable=False)
    status = Column(Text, nullable=False)
    summary = Column(Text)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    steps = relationship(
        "FixSessionStep",
        back_populates="session",
        order_by="FixSessionStep.step_number",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_fix_sessions_finding", "finding_id"),)


class FixSessionStep(Base):
    """One entry of a session's append-only step trail."""

    __tablename__ = "fix_session_steps"

    step_pk = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Uuid(as_uuid=False), ForeignKey("fix_sessions.id", ondelete="CASCADE"), nullable=False)
    step_number = Column(Integer, nullable=False)
    event_type = Column(Text, nullable=False)  # 'reasoning', 'tool_call', 'tool_result', 'message', 'error'
    content = Column(JSON)
    timestamp = Column(DateTime, default=utcnow)

    # Relationships
    session = relationship("FixSession", back_populates="steps")

    __table_args__ = (UniqueConstraint("session_id", "step_number", name="uq_fix_steps_session_number"),)


class BulkFixSession(Base):
    """One AI-driven attempt to resolve every open finding of a rule in a run."""

    __tablename__ = "bulk_fix_sessions"

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id = Column(Uuid(as_uuid=False), ForeignKey("analysis_runs.id", ondelete="CASCADE"), nullable=False)
    rule_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False)
    finding_ids = Column(JSON, nullable=False)  # Findings handed to the agent, in ordinal order
    total_findings = Column(Integer, nullable=False)
    fixed_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    summary = Column(Text)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    steps = relationship(
        "BulkFixSessionStep",
        back_populates="session",
        order_by="BulkFixSessionStep.step_number",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_bulk_fix_sessions_run_rule", "run_id", "rule_id"),)


class BulkFixSessionStep(Base):
    __tablename__ = "bulk_fix_session_steps"

    step_pk = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Uuid(as_uuid=False), ForeignKey("bulk_fix_sessions.id", ondelete="CASCADE"), nullable=False)
    step_number = Column(Integer, nullable=False)
    event_type = Column(Text, nullable=False)
    content = Column(JSON)
    timestamp = Column(DateTime, default=utcnow)

    # Relationships
    session = relationship("BulkFixSession", back_populates="steps")

    __table_args__ = (UniqueConstraint("session_id", "step_number", name="uq_bulk_fix_steps_session_number"),)
