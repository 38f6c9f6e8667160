"""
Job handlers registry and implementations.

Job handlers must be idempotent - a run abandoned by a crashed worker is
failed by the sweeper and, retries permitting, runs again.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from jobqueue.client.job import Job
from jobqueue.constants import JobLogLevel
from jobqueue.types.job import JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[Job], Awaitable[JobResult]]

# Handler registry
_handlers: dict[str, JobHandler] = {}


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        job_type: The job type this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler("send_email")
        async def handle_send_email(job: Job) -> JobResult:
            ...
    """

    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[job_type] = handler
        logger.debug(f"Registered handler for job type: {job_type}")
        return handler

    return decorator


def get_handler(job_type: str) -> JobHandler | None:
    """
    Get the handler for a job type.

    Args:
        job_type: The job type.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    """List all registered job types."""
    return list(_handlers.keys())


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(job: Job) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the job data as output.
    """
    logger.info("Echo job executing", extra={"job_id": job.id, "run_id": job.run_id})
    return JobResult(success=True, output={"echo": job.data})


@register_handler("sleep")
async def handle_sleep(job: Job) -> JobResult:
    """
    Sleep handler for testing delays.

    Data may contain:
    - duration_seconds: How long to sleep
    """
    duration = job.data.get("duration_seconds", 1)
    logger.info("Sleep job starting", extra={"job_id": job.id, "duration": duration})
    await asyncio.sleep(duration)
    return JobResult(success=True, output={"slept_for": duration})


@register_handler("failing_job")
async def handle_failing_job(job: Job) -> JobResult:
    """
    Handler that always fails - for testing retry logic.

    Data may contain:
    - fatal: Fail without retrying
    """
    attempt = job.doc.retried
    logger.info("Failing job executing (will fail)", extra={"job_id": job.id, "attempt": attempt})
    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {attempt}",
        fatal=bool(job.data.get("fatal", False)),
    )


@register_handler("long_running")
async def handle_long_running(job: Job) -> JobResult:
    """
    Long running job reporting progress as it goes.

    Each progress report also pushes the run deadline forward, so a job
    claimed with a work timeout shorter than its duration stays alive.

    Data may contain:
    - duration_seconds: How long the job takes
    - checkpoint_interval: How often to report progress
    """
    duration = job.data.get("duration_seconds", 60)
    interval = job.data.get("checkpoint_interval", 5)

    elapsed = 0.0
    while elapsed < duration:
        step = min(interval, duration - elapsed)
        await asyncio.sleep(step)
        elapsed += step
        if not await job.progress(elapsed, duration):
            return JobResult(success=False, error="Run lost while reporting progress", fatal=True)

    await job.log("Long running job finished", level=JobLogLevel.SUCCESS)
    return JobResult(success=True, output={"duration": duration, "completed": True})


async def execute_job(job: Job) -> JobResult:
    """
    Execute a job using the handler registered for its type.

    Args:
        job: A claimed job.

    Returns:
        JobResult from the handler.
    """
    handler = get_handler(job.type)

    if handler is None:
        logger.error(f"No handler for job type: {job.type}", extra={"job_id": job.id})
        return JobResult(
            success=False,
            error=f"No handler registered for job type: {job.type}",
            fatal=True,
        )

    start = time.perf_counter()
    try:
        result = await handler(job)
    except Exception as e:
        logger.exception("Handler raised exception", extra={"job_id": job.id, "error": str(e)})
        result = JobResult(success=False, error=f"Handler exception: {e}")
    result.duration_ms = (time.perf_counter() - start) * 1000
    return result
