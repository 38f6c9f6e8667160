"""
Job state machine.

The authoritative operations over job documents. Each public method runs
in one database transaction and is safe to call from any number of
processes at once: every transition is a conditional update whose WHERE
clause re-checks the precondition, so a lost race shows up as "nothing
changed" (False, None or an empty list) rather than as an error.
"""

import logging
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any

from pydantic import Field, validate_call
from sqlalchemy import case, literal, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.clock import add_ms, ms_between, utcnow
from jobqueue.constants import (
    CANCELLABLE_STATUSES,
    CLAIM_MAX_ROUNDS,
    FOREVER,
    LOG_LEVEL_ORDER,
    PAUSABLE_STATUSES,
    REMOVABLE_STATUSES,
    RESTARTABLE_STATUSES,
    SAVEABLE_STATUSES,
    SCHEDULE_SKIP_WINDOW_MS,
    JobLogLevel,
    JobStatus,
    RetryBackoff,
)
from jobqueue.db.models import Job, new_id
from jobqueue.db.repository import CLAIM_ORDER, JobRepository, has_unresolved_dependencies
from jobqueue.errors import InvalidArgumentError
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.server.dependencies import check_deps, ids_of_deps, resolve_dependents
from jobqueue.server.schedule import anchored, next_occurrence, occurrences_after
from jobqueue.types.job import JobDocument, JobLogEntry, JobProgress, RepeatSchedule, log_entry

logger = logging.getLogger(__name__)

JobId = Annotated[str, Field(min_length=1)]
JobIds = JobId | list[JobId]
NonNegativeInt = Annotated[int, Field(ge=0)]
PositiveInt = Annotated[int, Field(ge=1)]
RepeatWait = NonNegativeInt | RepeatSchedule

ScrubHook = Callable[[JobDocument], JobDocument]

_RESET_PROGRESS = {
    "progress_completed": 0,
    "progress_total": 1,
    "progress_percent": 0,
}
_CLEAR_RUN = {
    "run_id": None,
    "work_timeout": None,
    "expires_after": None,
}


def _as_list(ids: str | list[str] | None) -> list[str]:
    if ids is None:
        return []
    if isinstance(ids, str):
        return [ids]
    return list(dict.fromkeys(ids))


def _failed_message(fatal: bool, err: dict[str, Any]) -> str:
    value = err.get("value")
    suffix = f": {value}" if isinstance(value, str) else ""
    return f"Job Failed with{' Fatal' if fatal else ''} Error{suffix}."


class JobStateMachine:
    """
    Operations that validate and transition job documents.

    Args:
        session_factory: Factory producing sessions on the job store.
        scrub: Optional hook applied to documents before they are returned
            by `get_work` and `get_job`.
        metrics: Metrics collector; the process-wide one by default.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scrub: ScrubHook | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._session_factory = session_factory
        self._scrub = scrub
        self._metrics = metrics or get_metrics()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[JobRepository]:
        """Open a session and transaction; commit on success, roll back on error."""
        async with self._session_factory() as session:
            async with session.begin():
                yield JobRepository(session)

    async def ping(self) -> bool:
        """Check that the store answers."""
        async with self._session_factory() as session:
            await session.execute(select(literal(1)))
        return True

    def _scrubbed(self, docs: list[JobDocument]) -> list[JobDocument]:
        if self._scrub is None:
            return docs
        return [JobDocument.model_validate(self._scrub(doc)) for doc in docs]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @validate_call
    async def get_job(
        self,
        ids: JobIds,
        get_log: bool = False,
        get_failures: bool = False,
    ) -> JobDocument | list[JobDocument] | None:
        """
        Fetch job documents.

        Args:
            ids: One id or a list of ids.
            get_log: Include each job's log.
            get_failures: Include each job's failure records.

        Returns:
            For a single id, the document or None; for a list, the
            documents found.
        """
        single = isinstance(ids, str)
        async with self.transaction() as repo:
            docs = await repo.load_documents(_as_list(ids), with_log=get_log, with_failures=get_failures)
        docs = self._scrubbed(docs)
        if single:
            return docs[0] if docs else None
        return docs

    async def expired_runs(self, now: datetime | None = None) -> list[tuple[str, str]]:
        """(id, run_id) of running jobs whose run deadline has passed."""
        now = now or utcnow()
        async with self.transaction() as repo:
            runs = await repo.find_runs(
                Job.status == JobStatus.RUNNING,
                Job.expires_after.is_not(None),
                Job.expires_after < now,
            )
        return [(job_id, run_id) for job_id, run_id in runs if run_id]

    async def running_runs(self) -> list[tuple[str, str]]:
        """(id, run_id) of every running job."""
        async with self.transaction() as repo:
            runs = await repo.find_runs(Job.status == JobStatus.RUNNING)
        return [(job_id, run_id) for job_id, run_id in runs if run_id]

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    @validate_call
    async def save(self, doc: JobDocument, cancel_repeats: bool = False) -> str | None:
        """
        Insert a new job or resubmit a paused one.

        Args:
            doc: The job document; status must be waiting or paused.
            cancel_repeats: When inserting a job that repeats forever, first
                cancel existing cancellable jobs of the same type.

        Returns:
            The job id, or None if the job could not be scheduled,
            resubmitted, or was cancelled by its antecedents.

        Raises:
            InvalidArgumentError: If the status is not saveable.
        """
        if doc.status not in SAVEABLE_STATUSES:
            raise InvalidArgumentError(f"Cannot save a job with status {doc.status}")

        now = utcnow()
        doc = doc.model_copy(deep=True)
        doc.repeats = min(doc.repeats, FOREVER)
        doc.retries = min(doc.retries, FOREVER)
        doc.after = max(doc.after, now)
        doc.retry_until = max(doc.retry_until, now)
        doc.repeat_until = max(doc.repeat_until, now)

        if isinstance(doc.repeat_wait, RepeatSchedule):
            schedule = anchored(doc.repeat_wait, doc.after)
            occurrence = next_occurrence(schedule, doc.after)
            if occurrence is None:
                logger.warning(
                    "No schedule occurrence after job due time",
                    extra={"type": doc.type, "after": doc.after.isoformat()},
                )
                return None
            if occurrence > doc.repeat_until:
                logger.warning(
                    "No schedule occurrence before repeat deadline",
                    extra={"type": doc.type, "repeat_until": doc.repeat_until.isoformat()},
                )
                return None
            doc.after = occurrence
            doc.repeat_wait = schedule

        async with self.transaction() as repo:
            if doc.id is not None:
                job_id = await self._resubmit(repo, doc, now)
            else:
                job_id = await self._submit(repo, doc, now, cancel_repeats)
            if job_id is None:
                return None

            doc.id = job_id
            check = await check_deps(repo, doc, dry_run=False)
            if check.cancel:
                await self._cancel(repo, [job_id], antecedents=False, dependents=True)
                return None
            await self._ready(repo, [job_id])

        self._metrics.record_job_saved(doc.type)
        return job_id

    async def _resubmit(self, repo: JobRepository, doc: JobDocument, now: datetime) -> str | None:
        repeat_wait: Any = doc.repeat_wait
        if isinstance(repeat_wait, RepeatSchedule):
            repeat_wait = repeat_wait.model_dump(mode="json")
        updated = await repo.update_jobs(
            Job.id == doc.id,
            Job.status == JobStatus.PAUSED,
            Job.run_id.is_(None),
            values={
                "status": JobStatus.WAITING,
                "data": doc.data,
                "retries": doc.retries,
                "repeat_retries": (
                    doc.repeat_retries if doc.repeat_retries is not None else doc.retries + doc.retried
                ),
                "retry_until": doc.retry_until,
                "retry_wait": doc.retry_wait,
                "retry_backoff": doc.retry_backoff,
                "repeats": doc.repeats,
                "repeat_until": doc.repeat_until,
                "repeat_wait": repeat_wait,
                "priority": doc.priority,
                "after": doc.after,
                "updated": now,
            },
            entry=log_entry("Job Resubmitted", time=now),
        )
        if not updated:
            logger.warning("Resubmit found no paused job", extra={"job_id": doc.id})
            return None
        await repo.replace_unresolved(doc.id, doc.depends)
        return doc.id

    async def _submit(
        self,
        repo: JobRepository,
        doc: JobDocument,
        now: datetime,
        cancel_repeats: bool,
    ) -> str:
        if cancel_repeats and doc.repeats == FOREVER:
            existing = await repo.find_ids(
                Job.type == doc.type,
                Job.status.in_(list(CANCELLABLE_STATUSES)),
            )
            for job_id in existing:
                await self._cancel(repo, [job_id], antecedents=False, dependents=True)

        doc.run_id = None
        doc.created = now
        doc.updated = now
        if doc.repeat_retries is None:
            doc.repeat_retries = doc.retries + doc.retried
        doc.log.append(log_entry("Job Submitted", time=now))
        job_id = await repo.insert_document(doc)
        logger.info("Job submitted", extra={"job_id": job_id, "type": doc.type})
        return job_id

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    @validate_call
    async def get_work(
        self,
        types: JobId | list[JobId],
        max_jobs: PositiveInt = 1,
        work_timeout: PositiveInt | None = None,
    ) -> list[JobDocument]:
        """
        Claim up to `max_jobs` ready jobs of the given types.

        Candidates are ordered by priority, then retry deadline, then due
        time. The claim itself is a conditional update that only matches
        rows still ready and unclaimed, so when several workers race for
        the same rows each row goes to exactly one of them; losers simply
        claim fewer jobs and look again.

        Args:
            types: Job type or list of types.
            max_jobs: Maximum number of jobs to claim.
            work_timeout: Optional run deadline in milliseconds.

        Returns:
            The claimed documents (without logs), possibly fewer than asked.
        """
        types = _as_list(types)
        run_id = new_id()
        claimed: list[str] = []

        async with self.transaction() as repo:
            for _ in range(CLAIM_MAX_ROUNDS):
                needed = max_jobs - len(claimed)
                if needed <= 0:
                    break
                candidates = await repo.find_ids(
                    Job.type.in_(types),
                    Job.status == JobStatus.READY,
                    Job.run_id.is_(None),
                    order_by=CLAIM_ORDER,
                    limit=needed,
                )
                if not candidates:
                    break

                now = utcnow()
                values: dict[str, Any] = {
                    "status": JobStatus.RUNNING,
                    "run_id": run_id,
                    "updated": now,
                    "retries": case((Job.retries > 0, Job.retries - 1), else_=0),
                    "retried": Job.retried + 1,
                    "work_timeout": work_timeout,
                    "expires_after": add_ms(now, work_timeout) if work_timeout else None,
                }
                won = await repo.update_jobs(
                    Job.id.in_(candidates),
                    Job.status == JobStatus.READY,
                    Job.run_id.is_(None),
                    values=values,
                    entry=log_entry("Job Running", run_id=run_id, time=now),
                )
                # RETURNING yields rows in storage order; keep claim order
                won_ids = set(won)
                claimed.extend(job_id for job_id in candidates if job_id in won_ids)

            docs = await repo.load_documents(claimed)

        order = {job_id: i for i, job_id in enumerate(claimed)}
        docs.sort(key=lambda d: order[d.id])
        for doc in docs:
            self._metrics.record_jobs_claimed(doc.type)
        if docs:
            logger.info(
                "Jobs claimed",
                extra={"run_id": run_id, "count": len(docs), "types": types},
            )
        return self._scrubbed(docs)

    # ------------------------------------------------------------------
    # Running job reports
    # ------------------------------------------------------------------

    @validate_call
    async def job_progress(
        self,
        id: JobId,
        run_id: JobId,
        completed: Annotated[float, Field(ge=0)],
        total: Annotated[float, Field(gt=0)],
    ) -> bool:
        """
        Record progress of a running job.

        Raises:
            InvalidArgumentError: If completed exceeds total.

        Returns:
            True if the running job was updated.
        """
        if completed > total:
            raise InvalidArgumentError(f"Progress completed ({completed}) exceeds total ({total})")

        now = utcnow()
        async with self.transaction() as repo:
            job = await repo.get_job(Job.id == id, Job.run_id == run_id, Job.status == JobStatus.RUNNING)
            if job is None:
                logger.warning("jobProgress: running job not found", extra={"job_id": id, "run_id": run_id})
                return False
            values: dict[str, Any] = {
                "progress_completed": completed,
                "progress_total": total,
                "progress_percent": 100 * completed / total,
                "updated": now,
            }
            if job.work_timeout:
                values["expires_after"] = add_ms(now, job.work_timeout)
            updated = await repo.update_jobs(
                Job.id == id,
                Job.run_id == run_id,
                Job.status == JobStatus.RUNNING,
                values=values,
            )
        return bool(updated)

    @validate_call
    async def job_log(
        self,
        id: JobId,
        run_id: str | None,
        message: str,
        level: JobLogLevel = JobLogLevel.INFO,
        data: dict[str, Any] | None = None,
        echo: bool | JobLogLevel = False,
    ) -> bool:
        """
        Append an entry to a job's log, whatever its status.

        Args:
            id: Job id.
            run_id: Run the entry belongs to, if any.
            message: Log message.
            level: Entry level.
            data: Optional structured payload.
            echo: Also write the entry to the application log; a level
                restricts echoing to entries at or above it.

        Returns:
            True if the job exists.
        """
        now = utcnow()
        entry = JobLogEntry(time=now, run_id=run_id, level=level, message=message, data=data)
        async with self.transaction() as repo:
            job = await repo.get_job(Job.id == id)
            if job is None:
                logger.warning("jobLog: job not found", extra={"job_id": id})
                return False
            values: dict[str, Any] = {"updated": now}
            if job.status == JobStatus.RUNNING and job.work_timeout:
                values["expires_after"] = add_ms(now, job.work_timeout)
            updated = await repo.update_jobs(Job.id == id, values=values, entry=entry)

        if updated and self._should_echo(echo, level):
            log = logger.warning if level in (JobLogLevel.WARNING, JobLogLevel.DANGER) else logger.info
            log(
                f"Job log: {message}",
                extra={"job_id": id, "run_id": run_id, "level": str(level), "data": data},
            )
        return bool(updated)

    @staticmethod
    def _should_echo(echo: bool | JobLogLevel, level: JobLogLevel) -> bool:
        if isinstance(echo, JobLogLevel):
            return LOG_LEVEL_ORDER[level] >= LOG_LEVEL_ORDER[echo]
        return bool(echo)

    @validate_call
    async def job_done(
        self,
        id: JobId,
        run_id: JobId,
        result: dict[str, Any],
        repeat_id: bool = False,
        delay_deps: NonNegativeInt | None = None,
    ) -> bool | str:
        """
        Complete a running job.

        Schedules the next recurrence of a repeating job, resolves every job
        waiting on this one and promotes those that became eligible.

        Args:
            id: Job id.
            run_id: Run id received from get_work.
            result: Result object stored on the job.
            repeat_id: Return the id of the new recurrence, if one was made.
            delay_deps: Minimum delay (ms) before dependents become due.

        Returns:
            False if no matching running job; otherwise True, or the new
            recurrence id when `repeat_id` is set.
        """
        now = utcnow()
        async with self.transaction() as repo:
            found = await repo.find_ids(Job.id == id, Job.run_id == run_id, Job.status == JobStatus.RUNNING)
            if not found:
                logger.warning("jobDone: running job not found", extra={"job_id": id, "run_id": run_id})
                return False
            doc = (await repo.load_documents(found))[0]
            total = doc.progress.total or 1
            updated = await repo.update_jobs(
                Job.id == id,
                Job.run_id == run_id,
                Job.status == JobStatus.RUNNING,
                values={
                    "status": JobStatus.COMPLETED,
                    "result": result,
                    "progress_completed": total,
                    "progress_total": total,
                    "progress_percent": 100,
                    "updated": now,
                    **_CLEAR_RUN,
                },
                entry=log_entry("Job Completed", run_id=run_id, level=JobLogLevel.SUCCESS, time=now),
            )
            if not updated:
                logger.warning("jobDone failed", extra={"job_id": id, "run_id": run_id})
                return False

            recurrence_id = await self._repeat(repo, doc, now) if doc.repeats > 0 else None

            dependents = await resolve_dependents(repo, id, run_id, delay_deps, now)
            if dependents:
                await self._ready(repo, dependents)

        self._metrics.record_job_finished(JobStatus.COMPLETED)
        logger.info("Job completed", extra={"job_id": id, "run_id": run_id, "recurrence": recurrence_id})
        if repeat_id and recurrence_id:
            return recurrence_id
        return True

    async def _repeat(self, repo: JobRepository, doc: JobDocument, now: datetime) -> str | None:
        if isinstance(doc.repeat_wait, RepeatSchedule):
            upcoming = occurrences_after(doc.repeat_wait, now, count=2)
            if not upcoming:
                return None
            if ms_between(now, upcoming[0]) <= SCHEDULE_SKIP_WINDOW_MS:
                upcoming = upcoming[1:]
            if not upcoming or upcoming[0] > doc.repeat_until:
                return None
            wait = ms_between(now, upcoming[0])
            return await self._rerun(repo, doc, doc.repeats - 1, wait, doc.repeat_until)

        if add_ms(doc.repeat_until, -doc.repeat_wait) >= now:
            return await self._rerun(repo, doc, doc.repeats - 1, doc.repeat_wait, doc.repeat_until)
        return None

    async def _rerun(
        self,
        repo: JobRepository,
        doc: JobDocument,
        repeats: int,
        wait: float,
        until: datetime,
    ) -> str:
        now = utcnow()
        repeat_retries = doc.repeat_retries if doc.repeat_retries is not None else doc.retries + doc.retried
        clone = doc.model_copy(
            update={
                "id": None,
                "run_id": None,
                "status": JobStatus.WAITING,
                "result": None,
                "failures": [],
                "work_timeout": None,
                "expires_after": None,
                "repeat_retries": repeat_retries,
                "retries": min(repeat_retries, FOREVER),
                "retry_until": until,
                "retried": 0,
                "repeats": min(repeats, FOREVER),
                "repeat_until": until,
                "repeated": doc.repeated + 1,
                "created": now,
                "updated": now,
                "progress": JobProgress(),
                "log": [
                    log_entry(
                        "Rerunning job",
                        time=now,
                        data={"previous_job": {"id": doc.id, "run_id": doc.run_id}},
                    )
                ],
                "after": add_ms(now, wait),
            },
            deep=True,
        )
        job_id = await repo.insert_document(clone)
        await self._ready(repo, [job_id])
        logger.info("Job rerun scheduled", extra={"job_id": job_id, "previous_job": doc.id})
        return job_id

    @validate_call
    async def job_fail(
        self,
        id: JobId,
        run_id: JobId,
        err: dict[str, Any],
        fatal: bool = False,
    ) -> bool:
        """
        Fail a running job.

        The job goes back to waiting if the failure is not fatal, retries
        remain and the next attempt time is within `retry_until`; otherwise
        it is failed for good and every job waiting on it is cancelled.

        Args:
            id: Job id.
            run_id: Run id received from get_work.
            err: Error object recorded as a failure.
            fatal: Fail permanently regardless of retries.

        Returns:
            True if the running job was updated.
        """
        now = utcnow()
        async with self.transaction() as repo:
            job = await repo.get_job(Job.id == id, Job.run_id == run_id, Job.status == JobStatus.RUNNING)
            if job is None:
                logger.warning("jobFail: running job not found", extra={"job_id": id, "run_id": run_id})
                return False

            wait: float = job.retry_wait
            if job.retry_backoff == RetryBackoff.EXPONENTIAL:
                wait = job.retry_wait * 2.0 ** (job.retried - 1)
            after = add_ms(now, wait)
            retrying = not fatal and job.retries > 0 and job.retry_until >= after
            new_status = JobStatus.WAITING if retrying else JobStatus.FAILED

            error = {**err, "run_id": run_id}
            updated = await repo.update_jobs(
                Job.id == id,
                Job.run_id == run_id,
                Job.status == JobStatus.RUNNING,
                values={"status": new_status, "after": after, "updated": now, **_CLEAR_RUN},
                entry=log_entry(
                    _failed_message(not retrying, err),
                    run_id=run_id,
                    level=JobLogLevel.WARNING if retrying else JobLogLevel.DANGER,
                    time=now,
                ),
            )
            if not updated:
                return False
            await repo.append_failure(id, error, run_id, now)

            if not retrying:
                for dependent in await repo.dependents_of([id]):
                    await self._cancel(repo, [dependent], antecedents=False, dependents=True)

        self._metrics.record_job_finished(new_status)
        logger.info(
            "Job failed",
            extra={"job_id": id, "run_id": run_id, "status": str(new_status), "fatal": fatal},
        )
        return True

    # ------------------------------------------------------------------
    # Bulk transitions
    # ------------------------------------------------------------------

    @validate_call
    async def job_ready(
        self,
        ids: JobIds | None = None,
        force: bool = False,
        time: datetime | None = None,
    ) -> bool:
        """
        Promote waiting jobs that are due and have no pending antecedents.

        Args:
            ids: Restrict to these jobs (and make them due now); all jobs when empty.
            force: Promote even with pending antecedents, dropping them.
            time: Promote jobs due at or before this time instead of now.

        Returns:
            True if any job was promoted.
        """
        async with self.transaction() as repo:
            return await self._ready(repo, _as_list(ids), force=force, time=time)

    async def _ready(
        self,
        repo: JobRepository,
        ids: list[str],
        force: bool = False,
        time: datetime | None = None,
    ) -> bool:
        now = utcnow()
        criteria = [Job.status == JobStatus.WAITING, Job.after <= (time or now)]
        values: dict[str, Any] = {"status": JobStatus.READY, "updated": now}
        if ids:
            criteria.append(Job.id.in_(ids))
            values["after"] = now
        if not force:
            criteria.append(~has_unresolved_dependencies())

        promoted = await repo.update_jobs(
            *criteria,
            values=values,
            entry=log_entry("Promoted to ready", time=now),
        )
        if promoted and force:
            forced = await repo.find_ids(Job.id.in_(promoted), has_unresolved_dependencies())
            if forced:
                await repo.clear_unresolved(forced)
                await repo.append_log(
                    forced,
                    log_entry("Dependencies force resolved", level=JobLogLevel.WARNING, time=now),
                )
        if promoted:
            self._metrics.record_jobs_promoted(len(promoted))
        return bool(promoted)

    @validate_call
    async def job_pause(self, ids: JobIds) -> bool:
        """Pause waiting or ready jobs."""
        now = utcnow()
        async with self.transaction() as repo:
            paused = await repo.update_jobs(
                Job.id.in_(_as_list(ids)),
                Job.status.in_(list(PAUSABLE_STATUSES)),
                values={"status": JobStatus.PAUSED, "updated": now},
                entry=log_entry("Job Paused", time=now),
            )
        return bool(paused)

    @validate_call
    async def job_resume(self, ids: JobIds) -> bool:
        """Return paused jobs to waiting and promote those that are eligible."""
        now = utcnow()
        async with self.transaction() as repo:
            resumed = await repo.update_jobs(
                Job.id.in_(_as_list(ids)),
                Job.status == JobStatus.PAUSED,
                values={"status": JobStatus.WAITING, "updated": now},
                entry=log_entry("Job Resumed", time=now),
            )
            if resumed:
                await self._ready(repo, resumed)
        return bool(resumed)

    @validate_call
    async def job_cancel(
        self,
        ids: JobIds,
        antecedents: bool = False,
        dependents: bool = True,
    ) -> bool:
        """
        Cancel jobs, cascading to their dependents and/or antecedents.

        Returns:
            True if any job was cancelled.
        """
        async with self.transaction() as repo:
            return await self._cancel(repo, _as_list(ids), antecedents, dependents)

    async def _cancel(
        self,
        repo: JobRepository,
        ids: Iterable[str],
        antecedents: bool,
        dependents: bool,
    ) -> bool:
        visited: set[str] = set()
        pending = list(ids)
        changed = 0
        while pending:
            batch = [job_id for job_id in dict.fromkeys(pending) if job_id not in visited]
            if not batch:
                break
            visited.update(batch)
            now = utcnow()
            cancelled = await repo.update_jobs(
                Job.id.in_(batch),
                Job.status.in_(list(CANCELLABLE_STATUSES)),
                values={"status": JobStatus.CANCELLED, "updated": now, **_CLEAR_RUN, **_RESET_PROGRESS},
                entry=log_entry("Job Cancelled", level=JobLogLevel.WARNING, time=now),
            )
            changed += len(cancelled)
            pending = await ids_of_deps(
                repo, batch, antecedents, dependents, CANCELLABLE_STATUSES, exclude=visited
            )
        if changed:
            self._metrics.record_job_finished(JobStatus.CANCELLED, changed)
        return changed > 0

    @validate_call
    async def job_restart(
        self,
        ids: JobIds,
        retries: NonNegativeInt = 1,
        until: datetime | None = None,
        antecedents: bool = True,
        dependents: bool = False,
    ) -> bool:
        """
        Restart cancelled or failed jobs, cascading to antecedents and/or
        dependents, then promote them.

        Args:
            ids: Jobs to restart.
            retries: Attempts added to each job.
            until: New retry deadline.
            antecedents: Also restart restartable antecedents.
            dependents: Also restart restartable dependents.

        Returns:
            True if any job was restarted.
        """
        retries = min(retries, FOREVER)
        restarted: list[str] = []
        async with self.transaction() as repo:
            visited: set[str] = set()
            pending = _as_list(ids)
            while pending:
                batch = [job_id for job_id in dict.fromkeys(pending) if job_id not in visited]
                if not batch:
                    break
                visited.update(batch)
                now = utcnow()
                values: dict[str, Any] = {
                    "status": JobStatus.WAITING,
                    "updated": now,
                    "retries": case(
                        (Job.retries + retries > FOREVER, FOREVER),
                        else_=Job.retries + retries,
                    ),
                    **_RESET_PROGRESS,
                }
                if until is not None:
                    values["retry_until"] = until
                restarted.extend(
                    await repo.update_jobs(
                        Job.id.in_(batch),
                        Job.status.in_(list(RESTARTABLE_STATUSES)),
                        values=values,
                        entry=log_entry("Job Restarted", time=now),
                    )
                )
                pending = await ids_of_deps(
                    repo, batch, antecedents, dependents, RESTARTABLE_STATUSES, exclude=visited
                )
            if restarted:
                await self._ready(repo, restarted)
        return bool(restarted)

    @validate_call
    async def job_rerun(
        self,
        id: JobId,
        repeats: NonNegativeInt = 0,
        wait: RepeatWait = 0,
        until: datetime | None = None,
    ) -> str | bool:
        """
        Clone a completed job as a new waiting job.

        Args:
            id: A completed job.
            repeats: Recurrences for the clone.
            wait: Delay (ms) before the clone is due, or a schedule.
            until: Repeat deadline; the original's by default.

        Returns:
            The new job id, or False if the job is not completed.
        """
        async with self.transaction() as repo:
            found = await repo.find_ids(Job.id == id, Job.status == JobStatus.COMPLETED)
            if not found:
                return False
            doc = (await repo.load_documents(found))[0]
            if isinstance(wait, RepeatSchedule):
                now = utcnow()
                schedule = anchored(wait, now)
                occurrence = next_occurrence(schedule, now)
                doc.repeat_wait = schedule
                wait = ms_between(now, occurrence) if occurrence is not None else 0
            return await self._rerun(repo, doc, repeats, wait, until or doc.repeat_until)

    @validate_call
    async def job_remove(self, ids: JobIds) -> bool:
        """
        Delete jobs in a terminal status.

        Returns:
            True if any job was removed.
        """
        async with self.transaction() as repo:
            removed = await repo.delete_jobs(
                Job.id.in_(_as_list(ids)),
                Job.status.in_(list(REMOVABLE_STATUSES)),
            )
        if removed:
            logger.info("Jobs removed", extra={"count": len(removed)})
        return bool(removed)
