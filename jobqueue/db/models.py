"""
SQLAlchemy database models.
Defines the jobs table and its append-only child tables.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import JobLogLevel, JobStatus, RetryBackoff

JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    """Generate an opaque identifier for jobs and runs."""
    return uuid4().hex


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp on every dialect.

    PostgreSQL stores timestamptz; SQLite stores naive UTC text, so values
    are normalized on the way in and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _enum(enum_cls: type, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=16,
        values_callable=lambda x: [e.value for e in x],
    )


class Job(Base):
    """
    Job model: the scalar part of a job document.

    `depends`/`resolved` live in `job_dependencies`; the log and the
    failures live in their own append-only tables. Counters are BigInteger
    so the "forever" sentinel (2**53) fits.
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    run_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)

    type: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[JobStatus] = mapped_column(
        _enum(JobStatus, "job_status"),
        nullable=False,
        default=JobStatus.WAITING,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    after: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Retry policy
    retries: Mapped[int] = mapped_column(BigInteger, nullable=False)
    retried: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    repeat_retries: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    retry_until: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    retry_wait: Mapped[int] = mapped_column(BigInteger, nullable=False)
    retry_backoff: Mapped[RetryBackoff] = mapped_column(
        _enum(RetryBackoff, "retry_backoff"),
        nullable=False,
        default=RetryBackoff.CONSTANT,
    )

    # Repeat policy; repeat_wait is a millisecond count or a schedule object
    repeats: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    repeated: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    repeat_until: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    repeat_wait: Mapped[Any] = mapped_column(JSONType, nullable=False)

    # Progress of the current run
    progress_completed: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    progress_total: Mapped[float] = mapped_column(Float, nullable=False, default=1)
    progress_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Run deadline, only while running
    work_timeout: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    expires_after: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)

    created: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        # Claim filtering by type and status
        Index("ix_jobs_type_status", "type", "status"),
        # Claim ordering
        Index("ix_jobs_claim_order", "priority", "retry_until", "after"),
    )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.type}, "
            f"status={self.status}, retries={self.retries}, retried={self.retried})"
        )


class JobDependency(Base):
    """One antecedent of a job; `resolved` flips once the antecedent completes."""

    __tablename__ = "job_dependencies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    antecedent_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("job_id", "antecedent_id", name="uq_job_dependency"),
    )


class JobLogRecord(Base):
    """An entry of a job's log, ordered by insertion."""

    __tablename__ = "job_log_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    run_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    level: Mapped[JobLogLevel] = mapped_column(
        _enum(JobLogLevel, "job_log_level"),
        nullable=False,
        default=JobLogLevel.INFO,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)


class JobFailureRecord(Base):
    """A failure reported for one run of a job."""

    __tablename__ = "job_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    run_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    error: Mapped[dict] = mapped_column(JSONType, nullable=False)
