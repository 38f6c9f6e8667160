"""
Application constants.
Centralized location for all constant values used across the application.
"""

from datetime import UTC, datetime
from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> READY (promotion: due and no pending dependencies, or forced)
    - READY -> RUNNING (claimed by getWork)
    - RUNNING -> COMPLETED (done)
    - RUNNING -> WAITING (fail with retries left)
    - RUNNING -> FAILED (fatal failure or retries exhausted)
    - WAITING/READY <-> PAUSED (pause / resume)
    - RUNNING/READY/WAITING/PAUSED -> CANCELLED (cancel)
    - CANCELLED/FAILED -> WAITING (restart)
    """

    WAITING = "waiting"
    PAUSED = "paused"
    READY = "ready"
    RUNNING = "running"
    FAILED = "failed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


CANCELLABLE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.RUNNING, JobStatus.READY, JobStatus.WAITING, JobStatus.PAUSED}
)
PAUSABLE_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.READY, JobStatus.WAITING})
REMOVABLE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.FAILED}
)
RESTARTABLE_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.CANCELLED, JobStatus.FAILED})
SAVEABLE_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.WAITING, JobStatus.PAUSED})


class JobPriority(StrEnum):
    """Named priority levels. Lower numeric value is served first."""

    LOW = "low"
    NORMAL = "normal"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_LEVELS: dict[JobPriority, int] = {
    JobPriority.LOW: 10,
    JobPriority.NORMAL: 0,
    JobPriority.MEDIUM: -5,
    JobPriority.HIGH: -10,
    JobPriority.CRITICAL: -15,
}


class RetryBackoff(StrEnum):
    """How the wait between retries grows."""

    CONSTANT = "constant"
    EXPONENTIAL = "exponential"


class JobLogLevel(StrEnum):
    """Levels of entries in a job's own log."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    DANGER = "danger"


LOG_LEVEL_ORDER: dict[JobLogLevel, int] = {
    JobLogLevel.INFO: 0,
    JobLogLevel.SUCCESS: 1,
    JobLogLevel.WARNING: 2,
    JobLogLevel.DANGER: 3,
}


class ShutdownLevel(StrEnum):
    """Worker pool shutdown levels."""

    SOFT = "soft"
    NORMAL = "normal"
    HARD = "hard"


class PermissionGroup(StrEnum):
    """Named groups of operations used by allow/deny rules."""

    ADMIN = "admin"
    MANAGER = "manager"
    CREATOR = "creator"
    WORKER = "worker"


# Operation surface, in the names remote callers use
METHOD_START_SERVER = "startServer"
METHOD_SHUTDOWN_SERVER = "shutdownServer"
METHOD_GET_JOB = "getJob"
METHOD_GET_WORK = "getWork"
METHOD_JOB_SAVE = "jobSave"
METHOD_JOB_REMOVE = "jobRemove"
METHOD_JOB_PAUSE = "jobPause"
METHOD_JOB_RESUME = "jobResume"
METHOD_JOB_READY = "jobReady"
METHOD_JOB_CANCEL = "jobCancel"
METHOD_JOB_RESTART = "jobRestart"
METHOD_JOB_RERUN = "jobRerun"
METHOD_JOB_LOG = "jobLog"
METHOD_JOB_PROGRESS = "jobProgress"
METHOD_JOB_DONE = "jobDone"
METHOD_JOB_FAIL = "jobFail"

_MANAGER_METHODS = (
    METHOD_JOB_REMOVE,
    METHOD_JOB_PAUSE,
    METHOD_JOB_RESUME,
    METHOD_JOB_CANCEL,
    METHOD_JOB_READY,
    METHOD_JOB_RESTART,
)
_CREATOR_METHODS = (METHOD_JOB_SAVE, METHOD_JOB_RERUN)
_WORKER_METHODS = (
    METHOD_GET_WORK,
    METHOD_GET_JOB,
    METHOD_JOB_LOG,
    METHOD_JOB_PROGRESS,
    METHOD_JOB_DONE,
    METHOD_JOB_FAIL,
)

# Permission groups (and the method itself) that may grant each method
METHOD_PERMISSIONS: dict[str, tuple[str, ...]] = {
    METHOD_START_SERVER: (PermissionGroup.ADMIN, METHOD_START_SERVER),
    METHOD_SHUTDOWN_SERVER: (PermissionGroup.ADMIN, METHOD_SHUTDOWN_SERVER),
    **{m: (PermissionGroup.ADMIN, PermissionGroup.MANAGER, m) for m in _MANAGER_METHODS},
    **{m: (PermissionGroup.ADMIN, PermissionGroup.CREATOR, m) for m in _CREATOR_METHODS},
    **{m: (PermissionGroup.ADMIN, PermissionGroup.WORKER, m) for m in _WORKER_METHODS},
}

# Sentinels
FOREVER = 2**53
FOREVER_DATE = datetime(9999, 12, 31, 23, 59, 59, tzinfo=UTC)
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Job defaults (durations in milliseconds)
DEFAULT_RETRIES = 1
DEFAULT_RETRY_WAIT_MS = 5 * 60 * 1000
DEFAULT_REPEAT_WAIT_MS = 5 * 60 * 1000
DEFAULT_PRIORITY = JobPriority.NORMAL

# Server defaults
DEFAULT_PROMOTE_INTERVAL_SECONDS = 15.0
DEFAULT_SHUTDOWN_TIMEOUT_MS = 60 * 1000
CLAIM_MAX_ROUNDS = 16
SCHEDULE_SKIP_WINDOW_MS = 500

# Worker pool defaults
DEFAULT_POLL_INTERVAL_SECONDS = 5.0

# Client chunking for bulk calls
GET_JOBS_CHUNK_SIZE = 32
BULK_CHUNK_SIZE = 256

# Messages written to job logs and failures
MSG_WORK_TIMEOUT = "Failed for exceeding worker set workTimeout"
MSG_SERVER_SHUTDOWN = "Running at Job Server shutdown."
MSG_WORKER_SHUTDOWN = "Worker shutdown"
MSG_NO_ERROR_INFO = "No error information provided"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_METHOD_CALLS = "jobqueue_method_calls_total"
METRIC_METHOD_LATENCY = "jobqueue_method_latency_seconds"
METRIC_JOBS_SAVED = "jobqueue_jobs_saved_total"
METRIC_JOBS_CLAIMED = "jobqueue_jobs_claimed_total"
METRIC_JOBS_FINISHED = "jobqueue_jobs_finished_total"
METRIC_JOBS_PROMOTED = "jobqueue_jobs_promoted_total"
METRIC_RUNS_EXPIRED = "jobqueue_runs_expired_total"
METRIC_POOL_ACTIVE_TASKS = "jobqueue_pool_active_tasks"

# Trace span names
SPAN_INVOKE_METHOD = "invoke_method"
SPAN_PROMOTE_JOBS = "promote_jobs"
SPAN_EXECUTE_JOB = "execute_job"
