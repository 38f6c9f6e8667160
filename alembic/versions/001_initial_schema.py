"""Initial schema with jobs, dependencies, log and failures tables

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = ("waiting", "paused", "ready", "running", "failed", "cancelled", "completed")
RETRY_BACKOFFS = ("constant", "exponential")
LOG_LEVELS = ("info", "success", "warning", "danger")


def upgrade() -> None:
    # Enums are stored as checked varchar so the models work on SQLite too
    op.create_table(
        "jobs",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("run_id", sa.String(32), nullable=True),
        sa.Column("type", sa.String(255), nullable=False),
        sa.Column("data", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "status",
            sa.Enum(*JOB_STATUSES, name="job_status", native_enum=False, create_constraint=True, length=16),
            nullable=False,
            server_default="waiting",
        ),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retries", sa.BigInteger, nullable=False),
        sa.Column("retried", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("repeat_retries", sa.BigInteger, nullable=True),
        sa.Column("retry_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retry_wait", sa.BigInteger, nullable=False),
        sa.Column(
            "retry_backoff",
            sa.Enum(*RETRY_BACKOFFS, name="retry_backoff", native_enum=False, create_constraint=True, length=16),
            nullable=False,
            server_default="constant",
        ),
        sa.Column("repeats", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("repeated", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("repeat_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("repeat_wait", postgresql.JSONB, nullable=False),
        sa.Column("progress_completed", sa.Float, nullable=False, server_default="0"),
        sa.Column("progress_total", sa.Float, nullable=False, server_default="1"),
        sa.Column("progress_percent", sa.Float, nullable=False, server_default="0"),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("work_timeout", sa.BigInteger, nullable=True),
        sa.Column("expires_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_jobs_run_id", "jobs", ["run_id"])
    op.create_index("ix_jobs_expires_after", "jobs", ["expires_after"])
    op.create_index("ix_jobs_type_status", "jobs", ["type", "status"])
    op.create_index("ix_jobs_claim_order", "jobs", ["priority", "retry_until", "after"])

    # Partial index for promotion of due waiting jobs
    op.execute("""
        CREATE INDEX ix_jobs_promote
        ON jobs (after)
        WHERE status = 'waiting'
    """)

    op.create_table(
        "job_dependencies",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(32), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("antecedent_id", sa.String(32), nullable=False),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
        sa.Column("resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "antecedent_id", name="uq_job_dependency"),
    )
    op.create_index("ix_job_dependencies_job_id", "job_dependencies", ["job_id"])
    op.create_index("ix_job_dependencies_antecedent_id", "job_dependencies", ["antecedent_id"])

    op.create_table(
        "job_log_entries",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(32), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("run_id", sa.String(32), nullable=True),
        sa.Column(
            "level",
            sa.Enum(*LOG_LEVELS, name="job_log_level", native_enum=False, create_constraint=True, length=16),
            nullable=False,
            server_default="info",
        ),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("data", postgresql.JSONB, nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_log_entries_job_id", "job_log_entries", ["job_id"])

    op.create_table(
        "job_failures",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(32), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_id", sa.String(32), nullable=True),
        sa.Column("time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("error", postgresql.JSONB, nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_failures_job_id", "job_failures", ["job_id"])


def downgrade() -> None:
    op.drop_index("ix_job_failures_job_id")
    op.drop_table("job_failures")

    op.drop_index("ix_job_log_entries_job_id")
    op.drop_table("job_log_entries")

    op.drop_index("ix_job_dependencies_antecedent_id")
    op.drop_index("ix_job_dependencies_job_id")
    op.drop_table("job_dependencies")

    op.execute("DROP INDEX IF EXISTS ix_jobs_promote")
    op.drop_index("ix_jobs_claim_order")
    op.drop_index("ix_jobs_type_status")
    op.drop_index("ix_jobs_expires_after")
    op.drop_index("ix_jobs_run_id")
    op.drop_table("jobs")
