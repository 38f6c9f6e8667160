"""
Type definitions for the job queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobqueue.types.api import (
    AuthRequest,
    HealthResponse,
    MethodCallRequest,
    MethodCallResponse,
    TokenResponse,
)
from jobqueue.types.events import MethodEvent
from jobqueue.types.job import (
    JobDocument,
    JobFailure,
    JobLogEntry,
    JobProgress,
    JobResult,
    RepeatSchedule,
    log_entry,
)

__all__ = [
    # API types
    "MethodCallRequest",
    "MethodCallResponse",
    "TokenResponse",
    "AuthRequest",
    "HealthResponse",
    # Job types
    "JobDocument",
    "JobFailure",
    "JobLogEntry",
    "JobProgress",
    "JobResult",
    "RepeatSchedule",
    "log_entry",
    # Event types
    "MethodEvent",
]
