"""
Job document and related type definitions.

`JobDocument` is the shape of a job as it travels between the store, the
job server, the transport and the client-side `Job` handle.
"""

from datetime import datetime
from typing import Annotated, Any

from dateutil.rrule import rrulestr
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from jobqueue.clock import ensure_utc, utcnow
from jobqueue.constants import (
    DEFAULT_REPEAT_WAIT_MS,
    DEFAULT_RETRIES,
    DEFAULT_RETRY_WAIT_MS,
    EPOCH,
    FOREVER_DATE,
    JobLogLevel,
    JobStatus,
    RetryBackoff,
)

UTCDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class RepeatSchedule(BaseModel):
    """
    Calendar schedule for a repeating job.

    `rrule` holds RFC 5545 recurrence lines (RRULE, RDATE, EXRULE, EXDATE)
    without a DTSTART line; UNTIL and EXDATE values must be written in UTC
    ("...Z"). `dtstart` anchors the rule; when omitted, midnight UTC of the
    job's `after` day is used and stored on save.
    """

    model_config = ConfigDict(frozen=True)

    rrule: str = Field(..., min_length=1)
    dtstart: UTCDatetime | None = None

    @field_validator("rrule")
    @classmethod
    def _parse_rule(cls, value: str) -> str:
        if "DTSTART" in value.upper():
            raise ValueError("put the schedule anchor in dtstart, not in the rule text")
        try:
            rrulestr(value, dtstart=EPOCH, forceset=True)
        except (ValueError, TypeError) as e:
            raise ValueError(f"invalid recurrence rule: {e}") from e
        return value


class JobProgress(BaseModel):
    """Progress of the current run: completed <= total, percent derived."""

    completed: float = Field(default=0, ge=0)
    total: float = Field(default=1, ge=0)
    percent: float = Field(default=0, ge=0, le=100)


class JobLogEntry(BaseModel):
    """One entry of a job's append-only log."""

    time: UTCDatetime = Field(default_factory=utcnow)
    run_id: str | None = None
    level: JobLogLevel = JobLogLevel.INFO
    message: str
    data: dict[str, Any] | None = None


class JobFailure(BaseModel):
    """A failure reported for one run of a job."""

    model_config = ConfigDict(extra="allow")

    run_id: str | None = None
    time: UTCDatetime | None = None
    value: Any = None


class JobDocument(BaseModel):
    """
    Full persisted state of one job.

    Invariants kept by the job server: `run_id`, `work_timeout` and
    `expires_after` are set only while `status` is running; counters are
    never negative; `depends` holds only unresolved antecedent ids.
    """

    id: str | None = None
    run_id: str | None = None
    type: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.WAITING
    priority: int = 0

    depends: list[str] = Field(default_factory=list)
    resolved: list[str] = Field(default_factory=list)
    after: UTCDatetime = EPOCH

    retries: int = Field(default=DEFAULT_RETRIES, ge=0)
    retried: int = Field(default=0, ge=0)
    repeat_retries: int | None = Field(default=None, ge=0)
    retry_until: UTCDatetime = FOREVER_DATE
    retry_wait: int = Field(default=DEFAULT_RETRY_WAIT_MS, ge=0)
    retry_backoff: RetryBackoff = RetryBackoff.CONSTANT

    repeats: int = Field(default=0, ge=0)
    repeated: int = Field(default=0, ge=0)
    repeat_until: UTCDatetime = FOREVER_DATE
    repeat_wait: Annotated[int, Field(ge=0)] | RepeatSchedule = DEFAULT_REPEAT_WAIT_MS

    progress: JobProgress = Field(default_factory=JobProgress)
    log: list[JobLogEntry] = Field(default_factory=list)
    failures: list[JobFailure] = Field(default_factory=list)
    result: dict[str, Any] | None = None

    work_timeout: int | None = Field(default=None, ge=1)
    expires_after: UTCDatetime | None = None

    created: UTCDatetime | None = None
    updated: UTCDatetime | None = None


class JobResult(BaseModel):
    """
    Result of running a registered handler.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    fatal: bool = False
    duration_ms: float | None = None


def log_entry(
    message: str,
    run_id: str | None = None,
    level: JobLogLevel = JobLogLevel.INFO,
    data: dict[str, Any] | None = None,
    time: datetime | None = None,
) -> JobLogEntry:
    """Build a job log entry stamped with the current time."""
    return JobLogEntry(
        time=time or utcnow(),
        run_id=run_id,
        level=level,
        message=message,
        data=data,
    )
