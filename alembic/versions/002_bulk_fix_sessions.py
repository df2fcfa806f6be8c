"""Rule-level bulk fix sessions

Revision ID: 002
Revises: 001
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    if "bulk_fix_sessions" in inspector.get_table_names():
        return

    # Create bulk_fix_sessions table
    op.create_table(
        "bulk_fix_sessions",
        sa.Column("id", sa.Uuid(as_uuid=False), primary_key=True),
        sa.Column(
            "run_id",
            sa.Uuid(as_uuid=False),
            sa.ForeignKey("analysis_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("rule_id", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("finding_ids", sa.JSON, nullable=False),
        sa.Column("total_findings", sa.Integer, nullable=False),
        sa.Column("fixed_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("summary", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
    )
    op.create_index("idx_bulk_fix_sessions_run_rule", "bulk_fix_sessions", ["run_id", "rule_id"])

    # Create bulk_fix_session_steps table
    op.create_table(
        "bulk_fix_session_steps",
        sa.Column("step_pk", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.Uuid(as_uuid=False),
            sa.ForeignKey("bulk_fix_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_number", sa.Integer, nullable=False),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("content", sa.JSON),
        sa.Column("timestamp", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("session_id", "step_number", name="uq_bulk_fix_steps_session_number"),
    )


def downgrade() -> None:
    op.drop_table("bulk_fix_session_steps")
    op.drop_table("bulk_fix_sessions")
