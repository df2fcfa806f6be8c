"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Check if tables already exist and skip if so
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "semantic_models" in existing_tables:
        # Tables already exist, skip migration
        return

    # Create semantic_models table
    op.create_table(
        "semantic_models",
        sa.Column("database_name", sa.Text, primary_key=True),
        sa.Column("server_address", sa.Text, nullable=False),
        sa.Column("model_name", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )

    # Create analysis_runs table
    op.create_table(
        "analysis_runs",
        sa.Column("id", sa.Uuid(as_uuid=False), primary_key=True),
        sa.Column(
            "model_database_name",
            sa.Text,
            sa.ForeignKey("semantic_models.database_name", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("server_address", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("error_message", sa.Text),
        sa.Column("error_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("warning_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("info_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("rules_evaluated", sa.Integer, nullable=False, server_default="0"),
        sa.Column("rule_errors", sa.JSON),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
    )
    op.create_index("idx_analysis_runs_model", "analysis_runs", ["model_database_name"])
    op.create_index("idx_analysis_runs_created_at", "analysis_runs", ["created_at"])

    # Create findings table
    op.create_table(
        "findings",
        sa.Column("id", sa.Uuid(as_uuid=False), primary_key=True),
        sa.Column(
            "run_id",
            sa.Uuid(as_uuid=False),
            sa.ForeignKey("analysis_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("ordinal", sa.Integer, nullable=False),
        sa.Column("rule_id", sa.Text, nullable=False),
        sa.Column("rule_name", sa.Text, nullable=False),
        sa.Column("category", sa.Text, nullable=False),
        sa.Column("severity", sa.Integer, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("affected_object", sa.Text, nullable=False),
        sa.Column("object_type", sa.Text, nullable=False),
        sa.Column("fix_status", sa.Text, nullable=False, server_default="UNFIXED"),
        sa.Column("fix_summary", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("run_id", "ordinal", name="uq_findings_run_ordinal"),
    )
    op.create_index("idx_findings_run_id", "findings", ["run_id"])

    # Create fix_sessions table
    op.create_table(
        "fix_sessions",
        sa.Column("id", sa.Uuid(as_uuid=False), primary_key=True),
        sa.Column(
            "finding_id",
            sa.Uuid(as_uuid=False),
            sa.ForeignKey("findings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("summary", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
    )
    op.create_index("idx_fix_sessions_finding", "fix_sessions", ["finding_id"])

    # Create fix_session_steps table
    op.create_table(
        "fix_session_steps",
        sa.Column("step_pk", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.Uuid(as_uuid=False),
            sa.ForeignKey("fix_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_number", sa.Integer, nullable=False),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("content", sa.JSON),
        sa.Column("timestamp", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("session_id", "step_number", name="uq_fix_steps_session_number"),
    )

    # Create dax_queries table
    op.create_table(
        "dax_queries",
        sa.Column("query_pk", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("query_id", sa.Uuid(as_uuid=False), nullable=False, unique=True),
        sa.Column("query_text", sa.Text, nullable=False),
        sa.Column("natural_language", sa.Text),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("columns", sa.JSON),
        sa.Column("rows", sa.JSON),
        sa.Column("row_count", sa.Integer),
        sa.Column("execution_time_ms", sa.Integer),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
    )
    op.create_index("idx_dax_queries_status", "dax_queries", ["status"])


def downgrade() -> None:
    op.drop_table("dax_queries")
    op.drop_table("fix_session_steps")
    op.drop_table("fix_sessions")
    op.drop_table("findings")
    op.drop_table("analysis_runs")
    op.drop_table("semantic_models")
