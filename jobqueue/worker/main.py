"""
Worker process for executing jobs.

The worker runs a `JobQueue` over every registered job type (or the
configured subset), executes each claimed job with its handler and reports
the outcome back to the job server.
"""

import asyncio
import logging
import os
import signal
from collections.abc import Callable, Sequence

from jobqueue.client.job import Job
from jobqueue.client.transport import HttpTransport, LocalTransport, Transport
from jobqueue.config import get_settings
from jobqueue.db import close_db, init_db
from jobqueue.observability.logging import bind_context, clear_context, setup_logging
from jobqueue.observability.tracing import setup_tracing
from jobqueue.server.dispatcher import JobServer
from jobqueue.server.state_machine import JobStateMachine
from jobqueue.worker.handlers import execute_job, list_handlers
from jobqueue.worker.queue import JobQueue

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that claims jobs of the registered types and executes them.

    Features:
    - Bounded concurrency and batching through `JobQueue`
    - Run deadlines kept alive by handler progress reports
    - Graceful shutdown on SIGTERM/SIGINT at the configured level
    """

    def __init__(
        self,
        transport: Transport,
        job_types: Sequence[str] | None = None,
        worker_id: str | None = None,
        concurrency: int | None = None,
        payload: int | None = None,
        prefetch: int | None = None,
        poll_interval: float | None = None,
        work_timeout: int | None = None,
    ):
        """
        Initialize the worker.

        Args:
            transport: Transport to the job server.
            job_types: Types to claim. Defaults to the configured types, or
                every registered handler.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            concurrency: Maximum jobs executing at once.
            payload: Jobs handed to one task.
            prefetch: Extra jobs to keep claimed.
            poll_interval: Seconds between claim attempts.
            work_timeout: Run deadline (ms) for claimed jobs.
        """
        settings = get_settings()

        self.transport = transport
        self.job_types = list(job_types or settings.worker_types or list_handlers())
        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.concurrency = concurrency or settings.worker_concurrency
        self.payload = payload or settings.worker_payload
        self.prefetch = prefetch if prefetch is not None else settings.worker_prefetch
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.work_timeout = work_timeout or settings.worker_work_timeout_ms

        self._queue: JobQueue | None = None
        self._stopped: asyncio.Event | None = None

    @property
    def queue(self) -> JobQueue | None:
        return self._queue

    def start(self) -> JobQueue:
        """Start the worker pool; requires a running event loop."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "types": self.job_types,
                "concurrency": self.concurrency,
                "payload": self.payload,
            },
        )
        self._stopped = asyncio.Event()
        self._queue = JobQueue(
            self.transport,
            self.job_types,
            self._work,
            concurrency=self.concurrency,
            payload=self.payload,
            prefetch=self.prefetch,
            poll_interval=self.poll_interval,
            work_timeout=self.work_timeout,
            error_callback=self._on_error,
            name=self.worker_id,
        )
        return self._queue

    async def stop(self, level: str | None = None) -> None:
        """Shut the worker pool down and wait for it to finish."""
        if self._queue is None:
            return
        level = level or get_settings().worker_shutdown_level
        logger.info("Worker stopping", extra={"worker_id": self.worker_id, "level": level})
        await self._queue.shutdown(level=level, quiet=True)
        if self._stopped is not None:
            self._stopped.set()
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def wait_stopped(self) -> None:
        """Wait until `stop()` has completed."""
        if self._stopped is not None:
            await self._stopped.wait()

    def _on_error(self, error: BaseException) -> None:
        logger.error(
            f"Worker pool error: {error}",
            extra={"worker_id": self.worker_id},
            exc_info=error,
        )

    async def _work(self, payload: Job | list[Job], callback: Callable[[], None]) -> None:
        """
        Execute the jobs of one task.

        Handles each job's lifecycle:
        1. Execute the handler for the job type
        2. Report done or fail (fatal failures skip retries)
        3. Signal the pool that the task is finished

        A job whose report cannot be delivered is left to expire on the
        server; the rest of the payload still runs.
        """
        jobs = payload if isinstance(payload, list) else [payload]
        try:
            for job in jobs:
                bind_context(worker_id=self.worker_id, task_id=job.task_id, job_id=job.id)
                try:
                    await self._run_job(job)
                except Exception as e:
                    logger.exception(
                        f"Could not report job outcome: {e}",
                        extra={"job_id": job.id, "run_id": job.run_id},
                    )
        finally:
            clear_context()
            callback()

    async def _run_job(self, job: Job) -> None:
        result = await execute_job(job)
        if result.success:
            await job.done(result.output or {})
            logger.info(
                "Job completed successfully",
                extra={"job_id": job.id, "duration_ms": result.duration_ms},
            )
        else:
            await job.fail({"value": result.error}, fatal=result.fatal)
            logger.warning(
                "Job failed",
                extra={"job_id": job.id, "error": result.error, "fatal": result.fatal},
            )


def create_transport(server: JobServer | None = None) -> Transport:
    """
    Build the transport named by the configuration.

    Args:
        server: In-process job server, used by the local transport.
    """
    settings = get_settings()
    if settings.worker_transport == "http":
        return HttpTransport(settings.worker_server_url, token=settings.worker_token)
    if server is None:
        raise ValueError("local transport requires a job server")
    return LocalTransport(server)


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    if settings.otel_enabled:
        setup_tracing()

    server: JobServer | None = None
    if settings.worker_transport != "http":
        session_factory = await init_db()
        server = JobServer(JobStateMachine(session_factory))
        if settings.server_autostart:
            await server.start_server()

    transport = create_transport(server)
    worker = Worker(transport)
    worker.start()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.wait_stopped()
    finally:
        if isinstance(transport, HttpTransport):
            await transport.close()
        if server is not None:
            await server.close()
            await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
