"""Initial schema: microservices, use cases and analysis results."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "microservices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("document_filename", sa.String(), nullable=True),
        sa.Column("document_path", sa.String(), nullable=True),
        sa.Column("legacy_path", sa.String(), nullable=True),
        sa.Column("excluded", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_analysis", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_report", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_microservices_name", "microservices", ["name"], unique=True)

    op.create_table(
        "usecases",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("microservice_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(), nullable=False, server_default=""),
        sa.Column("title", sa.String(), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("actors", sa.Text(), nullable=False, server_default=""),
        sa.Column("preconditions", sa.Text(), nullable=False, server_default=""),
        sa.Column("main_flow", sa.Text(), nullable=False, server_default=""),
        sa.Column("alternative_flows", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["microservice_id"], ["microservices.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_usecases_microservice_id", "usecases", ["microservice_id"])

    op.create_table(
        "analysis_results",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("microservice_id", sa.Integer(), nullable=False),
        sa.Column("usecase_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("confidence", sa.String(), nullable=True),
        sa.Column("evidence", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("issue_code", sa.String(), nullable=True),
        sa.Column("issue_json", sa.Text(), nullable=True),
        sa.Column("jira_issue_key", sa.String(), nullable=True),
        sa.Column("jira_issue_summary", sa.String(), nullable=True),
        sa.Column("analyzed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["microservice_id"], ["microservices.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["usecase_id"], ["usecases.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "ix_analysis_results_microservice_id",
        "analysis_results",
        ["microservice_id"],
    )
    op.create_index("ix_analysis_results_usecase_id", "analysis_results", ["usecase_id"])
    op.create_index("ix_analysis_results_jira_issue_key", "analysis_results", ["jira_issue_key"])


def downgrade() -> None:
    op.drop_index("ix_analysis_results_jira_issue_key", table_name="analysis_results")
    op.drop_index("ix_analysis_results_usecase_id", table_name="analysis_results")
    op.drop_index("ix_analysis_results_microservice_id", table_name="analysis_results")
    op.drop_table("analysis_results")
    op.drop_index("ix_usecases_microservice_id", table_name="usecases")
    op.drop_table("usecases")
    op.drop_index("ix_microservices_name", table_name="microservices")
    op.drop_table("microservices")
