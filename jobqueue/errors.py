"""
Exception classes raised by the job queue.

Precondition failures (a job no longer in the expected status, a stale run
id) are not exceptions: operations report them by returning False, None or
an empty list.
"""

from typing import Any


class JobQueueError(Exception):
    """Base class for job queue errors."""


class InvalidArgumentError(JobQueueError, ValueError):
    """Malformed argument or illegal value; the operation was not attempted."""


class PermissionDeniedError(JobQueueError):
    """The caller is not permitted to invoke the requested method."""

    status_code = 403

    def __init__(self, method: str, caller_id: str | None = None):
        self.method = method
        self.caller_id = caller_id
        super().__init__("Method not authorized")


class UnknownMethodError(JobQueueError):
    """The requested method is not part of the operation surface."""

    status_code = 404

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Unknown method: {method}")


class RemoteMethodError(JobQueueError):
    """A remote job server rejected a call with a structured error."""

    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Remote method failed ({status_code}): {detail}")


class WorkerCallbackError(JobQueueError):
    """A worker completion callback was invoked more than once."""
