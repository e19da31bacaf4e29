"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Enums are stored as their values in VARCHAR(32) columns (native_enum=False)
RECORD_TABLES = (
    "docket_processes",
    "pending_manifestations",
    "archived_processes",
    "agenda_entries",
)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(), nullable=False)


def upgrade() -> None:
    # Target configs table
    op.create_table(
        "target_configs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(20), nullable=False),
        sa.Column("degree", sa.String(32), nullable=False),
        sa.Column("system", sa.String(20), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("base_url", sa.String(512), nullable=False),
        sa.Column("login_url", sa.String(512), nullable=False),
        sa.Column("api_url", sa.String(512), nullable=False),
        _created_at(),
        sa.UniqueConstraint("code", "degree", name="uq_target_code_degree"),
    )
    op.create_index("ix_target_configs_code", "target_configs", ["code"])
    op.create_index("ix_target_configs_created_at", "target_configs", ["created_at"])

    # Job definitions table
    op.create_table(
        "job_definitions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("cron_expression", sa.String(100), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column("target_config_ids", sa.JSON(), nullable=False),
        sa.Column("scrape_type", sa.String(32), nullable=False),
        sa.Column("scrape_subtype", sa.String(32), nullable=True),
        sa.Column("credential_id", sa.String(64), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("last_run_at", sa.DateTime(), nullable=True),
        sa.Column("next_run_at", sa.DateTime(), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=False),
        sa.Column("last_job_id", sa.String(36), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_job_definitions_credential_id", "job_definitions", ["credential_id"])
    op.create_index("ix_job_definitions_active", "job_definitions", ["active"])
    op.create_index("ix_job_definitions_created_at", "job_definitions", ["created_at"])

    # Scrape jobs table
    op.create_table(
        "scrape_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("scrape_type", sa.String(32), nullable=False),
        sa.Column("scrape_subtype", sa.String(32), nullable=True),
        sa.Column("credential_id", sa.String(64), nullable=False),
        sa.Column("definition_id", sa.String(36), nullable=True),
        sa.Column("partial_failure", sa.Boolean(), nullable=False),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("worker_id", sa.String(64), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(), nullable=True),
        sa.Column("logs", sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_scrape_jobs_status", "scrape_jobs", ["status"])
    op.create_index("ix_scrape_jobs_credential_id", "scrape_jobs", ["credential_id"])
    op.create_index("ix_scrape_jobs_definition_id", "scrape_jobs", ["definition_id"])
    op.create_index("ix_scrape_jobs_worker_id", "scrape_jobs", ["worker_id"])
    op.create_index("ix_scrape_jobs_created_at", "scrape_jobs", ["created_at"])

    # Job targets table
    op.create_table(
        "scrape_job_targets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "job_id",
            sa.String(36),
            sa.ForeignKey("scrape_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "target_config_id",
            sa.String(36),
            sa.ForeignKey("target_configs.id"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_scrape_job_targets_job_id", "scrape_job_targets", ["job_id"])
    op.create_index(
        "ix_scrape_job_targets_target_config_id", "scrape_job_targets", ["target_config_id"]
    )
    op.create_index("ix_scrape_job_targets_created_at", "scrape_job_targets", ["created_at"])

    # Executions table
    op.create_table(
        "scrape_executions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "job_id",
            sa.String(36),
            sa.ForeignKey("scrape_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "job_target_id",
            sa.String(36),
            sa.ForeignKey("scrape_job_targets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("target_config_id", sa.String(36), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("result_count", sa.Integer(), nullable=False),
        sa.Column("result_payload", sa.Text(), nullable=True),
        sa.Column("error_payload", sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_scrape_executions_job_id", "scrape_executions", ["job_id"])
    op.create_index("ix_scrape_executions_job_target_id", "scrape_executions", ["job_target_id"])
    op.create_index(
        "ix_scrape_executions_target_config_id", "scrape_executions", ["target_config_id"]
    )
    op.create_index("ix_scrape_executions_created_at", "scrape_executions", ["created_at"])

    # Performance metrics table
    op.create_table(
        "performance_metrics",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("target_config_id", sa.String(36), nullable=False),
        sa.Column("execution_id", sa.String(36), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("result_count", sa.Integer(), nullable=False),
        sa.Column("error_type", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_performance_metrics_target_config_id", "performance_metrics", ["target_config_id"]
    )
    op.create_index(
        "ix_performance_metrics_execution_id", "performance_metrics", ["execution_id"]
    )
    op.create_index("ix_performance_metrics_created_at", "performance_metrics", ["created_at"])

    # Normalized record tables, one per scrape type
    for table in RECORD_TABLES:
        extra = (
            [sa.Column("deadline_expired", sa.Boolean(), nullable=False)]
            if table == "pending_manifestations"
            else []
        )
        op.create_table(
            table,
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "execution_id",
                sa.String(36),
                sa.ForeignKey("scrape_executions.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("portal_id", sa.String(64), nullable=True),
            sa.Column("process_number", sa.String(64), nullable=True),
            sa.Column("court_body", sa.String(255), nullable=True),
            sa.Column("data", sa.JSON(), nullable=False),
            *extra,
            _created_at(),
        )
        op.create_index(f"ix_{table}_execution_id", table, ["execution_id"])
        op.create_index(f"ix_{table}_process_number", table, ["process_number"])
        op.create_index(f"ix_{table}_created_at", table, ["created_at"])


def downgrade() -> None:
    for table in reversed(RECORD_TABLES):
        op.drop_table(table)
    op.drop_table("performance_metrics")
    op.drop_table("scrape_executions")
    op.drop_table("scrape_job_targets")
    op.drop_table("scrape_jobs")
    op.drop_table("job_definitions")
    op.drop_table("target_configs")
