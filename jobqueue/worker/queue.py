"""
Worker pool.

`JobQueue` keeps up to `concurrency` invocations of a worker function busy
with jobs claimed from a job server. Two drivers cooperate on the event
loop: the claim driver (`_schedule_get_work`) tops up a local queue of
claimed jobs, at most one claim in flight at a time, and the dispatch driver
(`_process`) hands `payload` queued jobs at a time to the worker function.
Each invocation reports completion through a one-shot callback, which frees
its slot and re-triggers both drivers.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from jobqueue.client.job import Job
from jobqueue.client.transport import Transport
from jobqueue.constants import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    MSG_WORKER_SHUTDOWN,
    SPAN_EXECUTE_JOB,
    ShutdownLevel,
)
from jobqueue.errors import InvalidArgumentError, JobQueueError, WorkerCallbackError
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import get_tracer

logger = logging.getLogger(__name__)

Payload = Job | list[Job]
WorkerFunction = Callable[[Payload, Callable[[], None]], Awaitable[None] | None]
ErrorCallback = Callable[[BaseException], None]


def _default_error_callback(error: BaseException) -> None:
    logger.error(f"JobQueue: {error}", exc_info=error)


def _jobs_of(payload: Payload) -> list[Job]:
    return payload if isinstance(payload, list) else [payload]


class _CompletionSignal:
    """
    The callback a worker function calls once its task is finished.

    Only the first call frees the task's slot; later calls are reported to
    the pool's error callback and, under `callback_strict`, raise.
    """

    def __init__(self, queue: "JobQueue", task_id: str):
        self._queue = queue
        self._task_id = task_id
        self.called = False

    def __call__(self, *args: Any) -> None:
        if self.called:
            error = WorkerCallbackError(f"Worker callback called multiple times ({self._task_id})")
            self._queue._report(error)
            if self._queue.callback_strict:
                raise error
            return
        self.called = True
        self._queue._task_done(self._task_id)


class JobQueue:
    """
    Pool processing jobs of some types with a worker function.

    Must be constructed inside a running event loop; it starts claiming
    immediately.

    Args:
        transport: Transport to the job server.
        job_types: Job type or types to claim.
        worker: `worker(job_or_jobs, callback)`; plain or coroutine function.
            Receives a single `Job` when `payload` is 1, else a list.
        concurrency: Maximum simultaneous worker invocations.
        payload: Maximum jobs per invocation.
        prefetch: Extra jobs to keep claimed beyond what the slots can take.
        poll_interval: Seconds between claim attempts; None disables polling.
        work_timeout: Run deadline (ms) requested for each claimed job.
        callback_strict: Raise when a completion callback is called twice.
        error_callback: Receives claim errors, worker errors and callback
            misuse; logs them by default.
        name: Label for metrics; the job types by default.
    """

    def __init__(
        self,
        transport: Transport,
        job_types: str | Iterable[str],
        worker: WorkerFunction,
        *,
        concurrency: int = 1,
        payload: int = 1,
        prefetch: int = 0,
        poll_interval: float | None = DEFAULT_POLL_INTERVAL_SECONDS,
        work_timeout: int | None = None,
        callback_strict: bool = False,
        error_callback: ErrorCallback | None = None,
        name: str | None = None,
    ):
        types = [job_types] if isinstance(job_types, str) else list(job_types)
        if not types or not all(isinstance(t, str) and t for t in types):
            raise InvalidArgumentError("JobQueue: job_types must be a nonempty string or list of nonempty strings")
        if not callable(worker):
            raise InvalidArgumentError("JobQueue: worker must be callable")
        for option, value, minimum in (
            ("concurrency", concurrency, 1),
            ("payload", payload, 1),
            ("prefetch", prefetch, 0),
        ):
            if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
                raise InvalidArgumentError(f"JobQueue: {option} must be an integer >= {minimum}")
        if poll_interval is not None and poll_interval <= 0:
            raise InvalidArgumentError("JobQueue: poll_interval must be positive")
        if work_timeout is not None and (not isinstance(work_timeout, int) or work_timeout <= 0):
            raise InvalidArgumentError("JobQueue: work_timeout must be a positive integer")
        if error_callback is not None and not callable(error_callback):
            raise InvalidArgumentError("JobQueue: error_callback must be callable")

        self.transport = transport
        self.job_types = types
        self.worker = worker
        self.concurrency = concurrency
        self.payload = payload
        self.prefetch = prefetch
        self.poll_interval = poll_interval
        self.work_timeout = work_timeout
        self.callback_strict = callback_strict
        self.error_callback = error_callback or _default_error_callback
        self.name = name or ",".join(types)

        self._loop = asyncio.get_running_loop()
        self._tasks: list[Job] = []
        self._workers: dict[str, Payload] = {}
        self._task_number = 0
        self._get_work_outstanding = False
        self._get_work_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._intake_stopped = False
        self._stopping_tasks: asyncio.Future[None] | None = None
        self._running_tasks: set[asyncio.Task[None]] = set()
        self._metrics = get_metrics()
        self.paused = True

        self.resume()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def length(self) -> int:
        """Jobs claimed but not yet dispatched."""
        return len(self._tasks)

    def running(self) -> int:
        """Tasks currently executing."""
        return len(self._workers)

    def idle(self) -> bool:
        return self.length() + self.running() == 0

    def full(self) -> bool:
        return self.running() == self.concurrency

    def pause(self) -> "JobQueue":
        """Stop claiming and dispatching; running tasks continue."""
        if self.paused:
            return self
        self._cancel_polling()
        self.paused = True
        return self

    def resume(self) -> "JobQueue":
        """Resume claiming and dispatching."""
        if not self.paused:
            return self
        self.paused = False
        self._loop.call_soon(self._schedule_get_work)
        if self.poll_interval is not None and not self._intake_stopped:
            self._poll_task = self._loop.create_task(self._poll())
        for _ in range(self.concurrency):
            self._loop.call_soon(self._process)
        return self

    def trigger(self) -> "JobQueue":
        """Claim now instead of waiting for the next poll."""
        if not self.paused:
            self._loop.call_soon(self._schedule_get_work)
        return self

    def _report(self, error: BaseException) -> None:
        self.error_callback(error)

    # ------------------------------------------------------------------
    # Claim driver
    # ------------------------------------------------------------------

    async def _poll(self) -> None:
        interval = self.poll_interval or DEFAULT_POLL_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(interval)
            self._schedule_get_work()

    def _cancel_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    def _schedule_get_work(self) -> None:
        if self._get_work_outstanding or self.paused or self._intake_stopped:
            return
        wanted = self.prefetch + self.payload * (self.concurrency - self.running()) - self.length()
        if wanted <= 0:
            return
        self._get_work_outstanding = True
        self._get_work_task = self._loop.create_task(self._get_work(wanted))

    async def _get_work(self, wanted: int) -> None:
        try:
            jobs = await Job.get_work(
                self.transport,
                self.job_types,
                max_jobs=wanted,
                work_timeout=self.work_timeout,
            )
        except Exception as e:
            self._report(JobQueueError(f"Received error from getWork(): {e}"))
            return
        finally:
            self._get_work_outstanding = False

        if not isinstance(jobs, list):
            self._report(JobQueueError("Nonarray response from server from getWork()"))
            return
        if len(jobs) > wanted:
            self._report(JobQueueError(f"getWork() returned jobs ({len(jobs)}) in excess of maxJobs ({wanted})"))

        if jobs:
            logger.debug("Claimed jobs", extra={"queue": self.name, "count": len(jobs)})
        self._tasks.extend(jobs)
        if not self._intake_stopped:
            for _ in jobs:
                self._loop.call_soon(self._process)

    async def _stop_get_work(self) -> None:
        self._intake_stopped = True
        self._cancel_polling()
        if self._get_work_task is not None and not self._get_work_task.done():
            await self._get_work_task

    # ------------------------------------------------------------------
    # Dispatch driver
    # ------------------------------------------------------------------

    def _process(self) -> None:
        if self.paused or self.running() >= self.concurrency or not self.length():
            return

        payload: Payload
        if self.payload > 1:
            payload = self._tasks[: self.payload]
            del self._tasks[: self.payload]
        else:
            payload = self._tasks.pop(0)

        task_id = f"Task_{self._task_number}"
        self._task_number += 1
        for job in _jobs_of(payload):
            job.task_id = task_id
        self._workers[task_id] = payload
        self._metrics.set_pool_active_tasks(self.name, self.running())

        signal = _CompletionSignal(self, task_id)
        task = self._loop.create_task(self._run_task(task_id, payload, signal))
        self._running_tasks.add(task)
        task.add_done_callback(self._running_tasks.discard)

    async def _run_task(self, task_id: str, payload: Payload, signal: _CompletionSignal) -> None:
        jobs = _jobs_of(payload)
        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("jobqueue.task_id", task_id)
            span.set_attribute("jobqueue.job_ids", [job.id or "" for job in jobs])
            try:
                result = self.worker(payload, signal)
                if inspect.isawaitable(result):
                    await result
            except WorkerCallbackError:
                raise
            except Exception as e:
                span.record_exception(e)
                self._report(e)
                if signal.called:
                    return
                logger.warning(
                    "Worker function raised before completing its task",
                    extra={"task_id": task_id, "error": str(e)},
                )
                await self._fail_jobs(jobs, str(e))
                signal()

    def _task_done(self, task_id: str) -> None:
        self._workers.pop(task_id, None)
        self._metrics.set_pool_active_tasks(self.name, self.running())
        drained = self.running() == 0 and (self.length() == 0 or self.paused)
        if self._stopping_tasks is not None and drained:
            if not self._stopping_tasks.done():
                self._stopping_tasks.set_result(None)
        else:
            self._loop.call_soon(self._process)
            self._loop.call_soon(self._schedule_get_work)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def _wait_for_tasks(self) -> None:
        if self.running() == 0 and (self.length() == 0 or self.paused):
            return
        self._stopping_tasks = self._loop.create_future()
        await self._stopping_tasks

    async def _fail_jobs(self, jobs: list[Job], message: str = MSG_WORKER_SHUTDOWN) -> None:
        for job in jobs:
            try:
                await job.fail(message)
            except Exception as e:
                logger.error(
                    "Error failing job during shutdown",
                    extra={"job_id": job.id, "error": str(e)},
                )
                self._report(e)

    async def _hard(self) -> None:
        self.paused = True
        await self._stop_get_work()
        jobs = list(self._tasks)
        self._tasks = []
        for payload in self._workers.values():
            jobs.extend(_jobs_of(payload))
        await self._fail_jobs(jobs)

    async def _stop(self) -> None:
        self.paused = True
        await self._stop_get_work()
        queued = self._tasks
        self._tasks = []
        await self._wait_for_tasks()
        await self._fail_jobs(queued)

    async def _soft(self) -> None:
        await self._stop_get_work()
        for _ in range(self.concurrency):
            self._loop.call_soon(self._process)
        await self._wait_for_tasks()

    async def shutdown(
        self,
        level: ShutdownLevel | str = ShutdownLevel.NORMAL,
        quiet: bool = False,
        callback: Callable[[], None] | None = None,
    ) -> None:
        """
        Stop the pool.

        Args:
            level: "hard" fails queued and in-flight jobs at once; "normal"
                lets in-flight tasks finish, then fails queued jobs; "soft"
                lets queued and in-flight jobs drain and fails nothing.
            quiet: Do not log progress.
            callback: Called once when shutdown is complete.
        """
        try:
            level = ShutdownLevel(level)
        except ValueError as e:
            raise InvalidArgumentError(f"Invalid shutdown level: {level}") from e

        if not quiet:
            logger.warning(f"Shutting down {level}", extra={"queue": self.name})

        if level == ShutdownLevel.HARD:
            await self._hard()
        elif level == ShutdownLevel.SOFT:
            await self._soft()
        else:
            await self._stop()

        if callback is not None:
            callback()
        elif not quiet:
            logger.warning("Shutdown complete", extra={"queue": self.name})
