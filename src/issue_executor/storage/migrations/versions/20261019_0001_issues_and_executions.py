"""Issues and execution attempt records."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "issues",
        sa.Column("issue_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("domain", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("issue_id"),
    )
    op.create_index("ix_issues_status", "issues", ["status"])
    op.create_index("ix_issues_domain", "issues", ["domain"])

    op.create_table(
        "executions",
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("issue_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False, server_default="system"),
        sa.Column("command", sa.Text(), nullable=False),
        sa.Column("llm_response", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempt_no", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["issue_id"], ["issues.issue_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("execution_id"),
    )
    op.create_index(
        "idx_executions_issue_started",
        "executions",
        ["issue_id", "started_at"],
    )
    op.create_index("idx_executions_status", "executions", ["status"])


def downgrade() -> None:
    op.drop_index("idx_executions_status", table_name="executions")
    op.drop_index("idx_executions_issue_started", table_name="executions")
    op.drop_table("executions")
    op.drop_index("ix_issues_domain", table_name="issues")
    op.drop_index("ix_issues_status", table_name="issues")
    op.drop_table("issues")
