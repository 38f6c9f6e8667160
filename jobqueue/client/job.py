"""
Client-side job handle.

A `Job` wraps one job document. Producers configure it with chainable
builder methods and persist it with `save()`; workers receive handles from
`get_work()` and report back with `progress()`, `log()`, `done()` and
`fail()`. Every action goes through a transport to a job server.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

from jobqueue.client.transport import Transport
from jobqueue.clock import ensure_utc, utcnow
from jobqueue.constants import (
    BULK_CHUNK_SIZE,
    DEFAULT_REPEAT_WAIT_MS,
    DEFAULT_RETRY_WAIT_MS,
    EPOCH,
    FOREVER,
    FOREVER_DATE,
    GET_JOBS_CHUNK_SIZE,
    LOG_LEVEL_ORDER,
    METHOD_GET_JOB,
    METHOD_GET_WORK,
    METHOD_JOB_CANCEL,
    METHOD_JOB_DONE,
    METHOD_JOB_FAIL,
    METHOD_JOB_LOG,
    METHOD_JOB_PAUSE,
    METHOD_JOB_PROGRESS,
    METHOD_JOB_READY,
    METHOD_JOB_REMOVE,
    METHOD_JOB_RERUN,
    METHOD_JOB_RESTART,
    METHOD_JOB_RESUME,
    METHOD_JOB_SAVE,
    METHOD_SHUTDOWN_SERVER,
    METHOD_START_SERVER,
    MSG_NO_ERROR_INFO,
    PRIORITY_LEVELS,
    JobLogLevel,
    JobPriority,
    JobStatus,
    RetryBackoff,
)
from jobqueue.errors import InvalidArgumentError
from jobqueue.types.job import JobDocument, JobProgress, RepeatSchedule, log_entry

logger = logging.getLogger(__name__)


def _chunks(ids: Sequence[str], size: int) -> list[list[str]]:
    return [list(ids[i : i + size]) for i in range(0, len(ids), size)]


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _wrap_value(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {"value": value}


class Job:
    """
    Handle on one job document.

    Args:
        transport: Transport to the job server.
        type_or_doc: Job type for a new job, or an existing document.
        data: Payload of a new job.
    """

    def __init__(
        self,
        transport: Transport,
        type_or_doc: str | JobDocument | dict[str, Any],
        data: dict[str, Any] | None = None,
    ):
        self.transport = transport
        # Set by a worker pool while the job is dispatched
        self.task_id: str | None = None
        if isinstance(type_or_doc, str):
            if data is not None and not isinstance(data, dict):
                raise InvalidArgumentError("Job data must be a dict")
            now = utcnow()
            self._doc = JobDocument(type=type_or_doc, data=data or {}, created=now, updated=now)
            self.priority().retry(0).repeat(0).after().depends()
            self._doc.log.append(log_entry("Constructed", time=now))
        else:
            self._doc = JobDocument.model_validate(type_or_doc)

    def __repr__(self) -> str:
        return f"Job(id={self._doc.id}, type={self._doc.type}, status={self._doc.status})"

    @property
    def doc(self) -> JobDocument:
        return self._doc

    @property
    def id(self) -> str | None:
        return self._doc.id

    @property
    def run_id(self) -> str | None:
        return self._doc.run_id

    @property
    def type(self) -> str:
        return self._doc.type

    @property
    def data(self) -> dict[str, Any]:
        return self._doc.data

    def _require_id(self, action: str) -> str:
        if self._doc.id is None:
            raise InvalidArgumentError(f"Can't call .{action}() on an unsaved job")
        return self._doc.id

    def _require_run(self, action: str) -> tuple[str, str]:
        if self._doc.id is None or self._doc.run_id is None:
            raise InvalidArgumentError(f"Can't call .{action}() on an unsaved or non-running job")
        return self._doc.id, self._doc.run_id

    def _echo(self, message: str, level: JobLogLevel = JobLogLevel.INFO) -> None:
        extra = {"job_id": self._doc.id, "run_id": self._doc.run_id, "level": str(level)}
        if level in (JobLogLevel.WARNING, JobLogLevel.DANGER):
            logger.warning(message, extra=extra)
        else:
            logger.info(message, extra=extra)

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def depends(self, *jobs: "Job") -> "Job":
        """
        Set the jobs this one waits for; no arguments clears them.

        Raises:
            InvalidArgumentError: If any job has not been saved.
        """
        ids: list[str] = []
        for job in jobs:
            if not isinstance(job, Job) or job.id is None:
                raise InvalidArgumentError("Each provided object must be a saved Job instance (with an id)")
            ids.append(job.id)
        self._doc.depends = ids
        self._doc.resolved = []
        return self

    def priority(self, level: int | str | JobPriority = 0) -> "Job":
        """
        Set the priority: an integer (lower runs first) or a named level.

        Raises:
            InvalidArgumentError: On an unknown name or a non-integer value.
        """
        if isinstance(level, str):
            try:
                value = PRIORITY_LEVELS[JobPriority(level)]
            except ValueError as e:
                raise InvalidArgumentError(f"Invalid priority level: {level}") from e
        elif isinstance(level, int) and not isinstance(level, bool):
            value = level
        else:
            raise InvalidArgumentError("priority must be an integer or valid priority level")
        self._doc.priority = value
        return self

    def retry(
        self,
        retries: int | None = None,
        until: datetime | None = None,
        wait: int | None = None,
        backoff: str | RetryBackoff | None = None,
    ) -> "Job":
        """
        Configure retries after failure.

        Args:
            retries: Retries after the first attempt; forever by default.
            until: Failures after this time are terminal.
            wait: Base delay (ms) between attempts.
            backoff: "constant" or "exponential".
        """
        if retries is not None and not _is_count(retries):
            raise InvalidArgumentError("retries must be an integer >= 0")
        if until is not None and not isinstance(until, datetime):
            raise InvalidArgumentError("until must be a datetime")
        if wait is not None and not _is_count(wait):
            raise InvalidArgumentError("wait must be an integer >= 0")
        try:
            backoff_value = RetryBackoff(backoff) if backoff is not None else RetryBackoff.CONSTANT
        except ValueError as e:
            raise InvalidArgumentError(f"Invalid retry backoff method: {backoff}") from e

        attempts = min(retries + 1, FOREVER) if retries is not None else FOREVER
        self._doc.retries = attempts
        self._doc.repeat_retries = attempts
        self._doc.retry_wait = wait if wait is not None else DEFAULT_RETRY_WAIT_MS
        self._doc.retry_backoff = backoff_value
        self._doc.retry_until = ensure_utc(until) if until is not None else FOREVER_DATE
        return self

    def repeat(
        self,
        repeats: int | None = None,
        until: datetime | None = None,
        wait: int | None = None,
        schedule: RepeatSchedule | str | dict[str, Any] | None = None,
    ) -> "Job":
        """
        Configure recurrences after completion.

        Args:
            repeats: Further runs after this one; forever by default.
            until: No recurrence is scheduled after this time.
            wait: Fixed delay (ms) after completion.
            schedule: Calendar schedule (RRULE text or a `RepeatSchedule`).

        Raises:
            InvalidArgumentError: If both wait and schedule are given, or on
                bad values.
        """
        if wait is not None and schedule is not None:
            raise InvalidArgumentError("wait and schedule options are mutually exclusive")
        if repeats is not None and not _is_count(repeats):
            raise InvalidArgumentError("repeats must be an integer >= 0")
        if until is not None and not isinstance(until, datetime):
            raise InvalidArgumentError("until must be a datetime")
        if wait is not None and not _is_count(wait):
            raise InvalidArgumentError("wait must be an integer >= 0")

        repeat_wait: int | RepeatSchedule = DEFAULT_REPEAT_WAIT_MS if wait is None else wait
        if schedule is not None:
            try:
                if isinstance(schedule, str):
                    repeat_wait = RepeatSchedule(rrule=schedule)
                else:
                    repeat_wait = RepeatSchedule.model_validate(schedule)
            except ValueError as e:
                raise InvalidArgumentError(f"Invalid schedule: {e}") from e

        self._doc.repeats = min(repeats, FOREVER) if repeats is not None else FOREVER
        self._doc.repeat_wait = repeat_wait
        self._doc.repeat_until = ensure_utc(until) if until is not None else FOREVER_DATE
        return self

    def delay(self, wait: int = 0) -> "Job":
        """Make the job due `wait` milliseconds from now."""
        if not _is_count(wait):
            raise InvalidArgumentError("delay requires a non-negative integer")
        return self.after(utcnow() + timedelta(milliseconds=wait))

    def after(self, when: datetime = EPOCH) -> "Job":
        """Make the job due no earlier than `when`."""
        if not isinstance(when, datetime):
            raise InvalidArgumentError("after requires a datetime")
        self._doc.after = ensure_utc(when)
        return self

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def save(self, cancel_repeats: bool = False) -> str | None:
        """
        Persist the job (insert, or resubmit a paused job).

        Returns:
            The job id, or None if the server declined it.
        """
        job_id = await self.transport.call(METHOD_JOB_SAVE, self._doc, cancel_repeats=cancel_repeats)
        if job_id:
            self._doc.id = job_id
        return job_id

    async def refresh(self, get_log: bool = False, get_failures: bool = False) -> "Job | None":
        """Reload the document from the server; None if the job is gone."""
        job_id = self._require_id("refresh")
        doc = await self.transport.call(
            METHOD_GET_JOB, job_id, get_log=get_log, get_failures=get_failures
        )
        if not doc:
            return None
        self._doc = JobDocument.model_validate(doc)
        return self

    async def log(
        self,
        message: str,
        level: JobLogLevel | str = JobLogLevel.INFO,
        data: dict[str, Any] | None = None,
        echo: bool | JobLogLevel | str = False,
    ) -> "bool | Job":
        """
        Add an entry to the job's log.

        An unsaved job keeps the entry locally and returns itself.

        Args:
            message: Log message.
            level: Entry level.
            data: Optional structured payload.
            echo: Also write to the application log, optionally only at or
                above a level.
        """
        if not isinstance(message, str):
            raise InvalidArgumentError("Log message must be a string")
        try:
            level = JobLogLevel(level)
        except ValueError as e:
            raise InvalidArgumentError(f"Invalid log level: {level}") from e

        if echo:
            threshold = JobLogLevel(echo) if isinstance(echo, str) else level
            if LOG_LEVEL_ORDER[level] >= LOG_LEVEL_ORDER[threshold]:
                self._echo(f"LOG: {level}, {self._doc.id} {self._doc.run_id}: {message}", level)

        if self._doc.id is None:
            self._doc.log.append(log_entry(message, level=level, data=data))
            return self
        return await self.transport.call(
            METHOD_JOB_LOG, self._doc.id, self._doc.run_id, message, level=level, data=data
        )

    async def progress(self, completed: float = 0, total: float = 1, echo: bool = False) -> "bool | Job | None":
        """
        Report progress.

        An unsaved job records it locally and returns itself; a saved job
        that is not running returns None.

        Raises:
            InvalidArgumentError: If completed < 0, total <= 0 or completed > total.
        """
        if completed < 0 or total <= 0 or total < completed:
            raise InvalidArgumentError(
                f"job.progress: something is wrong with progress params: {self._doc.id}, "
                f"{completed} out of {total}"
            )
        progress = JobProgress(completed=completed, total=total, percent=100 * completed / total)
        if echo:
            self._echo(
                f"PROGRESS: {self._doc.id} {self._doc.run_id}: "
                f"{completed} out of {total} ({progress.percent}%)"
            )

        if self._doc.id is None:
            self._doc.progress = progress
            return self
        if self._doc.run_id is None:
            return None
        ok = await self.transport.call(METHOD_JOB_PROGRESS, self._doc.id, self._doc.run_id, completed, total)
        if ok:
            self._doc.progress = progress
        return ok

    async def done(
        self,
        result: Any = None,
        repeat_id: bool = False,
        delay_deps: int | None = None,
    ) -> bool | str:
        """
        Complete the running job.

        Args:
            result: Result object; other values are stored as {"value": ...}.
            repeat_id: Return the id of the scheduled recurrence, if any.
            delay_deps: Minimum delay (ms) before dependents become due.
        """
        job_id, run_id = self._require_run("done")
        payload = {} if result is None else _wrap_value(result)
        return await self.transport.call(
            METHOD_JOB_DONE, job_id, run_id, payload, repeat_id=repeat_id, delay_deps=delay_deps
        )

    async def fail(self, error: Any = MSG_NO_ERROR_INFO, fatal: bool = False) -> bool:
        """
        Fail the running job.

        Args:
            error: Error object; other values are stored as {"value": ...}.
            fatal: Do not retry.
        """
        job_id, run_id = self._require_run("fail")
        return await self.transport.call(METHOD_JOB_FAIL, job_id, run_id, _wrap_value(error), fatal=fatal)

    async def pause(self) -> "bool | Job":
        """Pause the job; an unsaved job is marked paused locally."""
        if self._doc.id is None:
            self._doc.status = JobStatus.PAUSED
            return self
        return await self.transport.call(METHOD_JOB_PAUSE, self._doc.id)

    async def resume(self) -> "bool | Job":
        """Resume the job; an unsaved job is marked waiting locally."""
        if self._doc.id is None:
            self._doc.status = JobStatus.WAITING
            return self
        return await self.transport.call(METHOD_JOB_RESUME, self._doc.id)

    async def ready(self, time: datetime | None = None, force: bool = False) -> bool:
        """Promote the job to ready now if it is eligible (or `force`)."""
        job_id = self._require_id("ready")
        return await self.transport.call(METHOD_JOB_READY, job_id, force=force, time=time)

    async def cancel(self, antecedents: bool | None = None, dependents: bool | None = None) -> bool:
        """Cancel the job; cascade flags default to the server's."""
        job_id = self._require_id("cancel")
        options = {
            key: value
            for key, value in (("antecedents", antecedents), ("dependents", dependents))
            if value is not None
        }
        return await self.transport.call(METHOD_JOB_CANCEL, job_id, **options)

    async def restart(
        self,
        retries: int = 1,
        until: datetime | None = None,
        antecedents: bool | None = None,
        dependents: bool | None = None,
    ) -> bool:
        """Restart a cancelled or failed job with `retries` more attempts."""
        job_id = self._require_id("restart")
        if not _is_count(retries):
            raise InvalidArgumentError("retries must be an integer >= 0")
        options: dict[str, Any] = {"retries": retries, "until": until}
        if antecedents is not None:
            options["antecedents"] = antecedents
        if dependents is not None:
            options["dependents"] = dependents
        return await self.transport.call(METHOD_JOB_RESTART, job_id, **options)

    async def rerun(
        self,
        repeats: int = 0,
        until: datetime | None = None,
        wait: int | RepeatSchedule | None = None,
    ) -> str | bool:
        """
        Clone this completed job as a new waiting job.

        Returns:
            The new job id, or False.
        """
        job_id = self._require_id("rerun")
        if not _is_count(repeats):
            raise InvalidArgumentError("repeats must be an integer >= 0")
        wait = self._doc.repeat_wait if wait is None else wait
        return await self.transport.call(METHOD_JOB_RERUN, job_id, repeats=repeats, wait=wait, until=until)

    async def remove(self) -> bool:
        """Delete the job; only from cancelled, completed or failed."""
        job_id = self._require_id("remove")
        return await self.transport.call(METHOD_JOB_REMOVE, job_id)

    # ------------------------------------------------------------------
    # Class-level helpers
    # ------------------------------------------------------------------

    @classmethod
    async def get_work(
        cls,
        transport: Transport,
        types: str | Iterable[str],
        max_jobs: int | None = None,
        work_timeout: int | None = None,
    ) -> "Job | list[Job] | None":
        """
        Claim ready jobs.

        Returns:
            A list of handles when `max_jobs` is given, else one handle or None.
        """
        if work_timeout is not None and (not _is_count(work_timeout) or work_timeout == 0):
            raise InvalidArgumentError("getWork: work_timeout must be a positive integer")
        type_list = [types] if isinstance(types, str) else list(types)
        docs = await transport.call(
            METHOD_GET_WORK, type_list, max_jobs=max_jobs or 1, work_timeout=work_timeout
        )
        jobs = [cls(transport, doc) for doc in docs]
        if max_jobs is not None:
            return jobs
        return jobs[0] if jobs else None

    @classmethod
    async def get_job(
        cls,
        transport: Transport,
        job_id: str,
        get_log: bool = False,
        get_failures: bool = False,
    ) -> "Job | None":
        """Fetch one job by id."""
        doc = await transport.call(METHOD_GET_JOB, job_id, get_log=get_log, get_failures=get_failures)
        return cls(transport, doc) if doc else None

    @classmethod
    async def get_jobs(
        cls,
        transport: Transport,
        ids: Sequence[str],
        get_log: bool = False,
        get_failures: bool = False,
    ) -> list["Job"]:
        """Fetch many jobs, in chunks."""
        jobs: list[Job] = []
        for chunk in _chunks(ids, GET_JOBS_CHUNK_SIZE):
            docs = await transport.call(METHOD_GET_JOB, chunk, get_log=get_log, get_failures=get_failures)
            jobs.extend(cls(transport, doc) for doc in docs or [])
        return jobs

    @staticmethod
    async def _bulk(transport: Transport, method: str, ids: Sequence[str], **options: Any) -> bool:
        changed = False
        for chunk in _chunks(ids, BULK_CHUNK_SIZE):
            changed = bool(await transport.call(method, chunk, **options)) or changed
        return changed

    @classmethod
    async def pause_jobs(cls, transport: Transport, ids: Sequence[str]) -> bool:
        return await cls._bulk(transport, METHOD_JOB_PAUSE, ids)

    @classmethod
    async def resume_jobs(cls, transport: Transport, ids: Sequence[str]) -> bool:
        return await cls._bulk(transport, METHOD_JOB_RESUME, ids)

    @classmethod
    async def ready_jobs(
        cls,
        transport: Transport,
        ids: Sequence[str] = (),
        force: bool = False,
        time: datetime | None = None,
    ) -> bool:
        """Promote jobs; with no ids every eligible job is promoted."""
        if not ids:
            return bool(await transport.call(METHOD_JOB_READY, [], force=force, time=time))
        return await cls._bulk(transport, METHOD_JOB_READY, ids, force=force, time=time)

    @classmethod
    async def cancel_jobs(cls, transport: Transport, ids: Sequence[str], **options: bool) -> bool:
        return await cls._bulk(transport, METHOD_JOB_CANCEL, ids, **options)

    @classmethod
    async def restart_jobs(cls, transport: Transport, ids: Sequence[str], **options: Any) -> bool:
        return await cls._bulk(transport, METHOD_JOB_RESTART, ids, **options)

    @classmethod
    async def remove_jobs(cls, transport: Transport, ids: Sequence[str]) -> bool:
        return await cls._bulk(transport, METHOD_JOB_REMOVE, ids)

    @staticmethod
    async def start_server(transport: Transport) -> bool:
        return await transport.call(METHOD_START_SERVER)

    @staticmethod
    async def shutdown_server(transport: Transport, timeout: int | None = None) -> bool:
        return await transport.call(METHOD_SHUTDOWN_SERVER, timeout=timeout)
