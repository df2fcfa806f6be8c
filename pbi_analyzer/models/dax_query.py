"""DAX query execution history."""

import uuid

from sqlalchemy import Column, DateTime, Index, Integer, JSON, Text, Uuid

from pbi_analyzer.database import Base, utcnow


class DaxQuery(Base):
    """A query execution; rows are only ever inserted and finalized, never removed."""

    __tablename__ = "dax_queries"

    query_pk = Column(Integer, primary_key=True, autoincrement=True)  # Insertion order
    query_id = Column(Uuid(as_uuid=False), nullable=False, unique=True, default=lambda: str(uuid.uuid4()))
    query_text = Column(Text, nullable=False)
    natural_language = Column(Text)
    status = Column(Text, nullable=False)  # 'RUNNING', 'COMPLETED', 'FAILED'
    columns = Column(JSON)  # [{name, dataType}]
    rows = Column(JSON)
    row_count = Column(Integer)
    execution_time_ms = Column(Integer)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (Index("idx_dax_queries_status", "status"),)
