"""
Job repository for database operations.
Implements the store contract the job server is built on: conditional
find, conditional multi-row update reporting what it touched, insert and
delete, plus the child tables that hold dependencies, logs and failures.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, and_, delete, exists, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.constants import JobStatus
from jobqueue.db.models import Job, JobDependency, JobFailureRecord, JobLogRecord, new_id
from jobqueue.types.job import (
    JobDocument,
    JobFailure,
    JobLogEntry,
    JobProgress,
    RepeatSchedule,
)

logger = logging.getLogger(__name__)

# Claim order: lower priority value first, then earliest deadline, then earliest due
CLAIM_ORDER = (Job.priority.asc(), Job.retry_until.asc(), Job.after.asc())


def has_unresolved_dependencies() -> ColumnElement[bool]:
    """Correlated EXISTS: the job row still has an unresolved antecedent."""
    return exists().where(
        and_(
            JobDependency.job_id == Job.id,
            JobDependency.resolved.is_(False),
        )
    )


class JobRepository:
    """
    Repository for job database operations.

    Every write is a single conditional statement, so the outcome reported
    back (ids actually touched) is exact even when other sessions race on
    the same rows.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def find_ids(
        self,
        *criteria: ColumnElement[bool],
        order_by: Sequence[Any] = (),
        limit: int | None = None,
    ) -> list[str]:
        """
        Find ids of jobs matching all criteria.

        Args:
            *criteria: SQLAlchemy filter expressions over `Job`.
            order_by: Sort expressions.
            limit: Maximum number of ids.

        Returns:
            Matching job ids in the requested order.
        """
        stmt = select(Job.id).where(*criteria).order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_runs(self, *criteria: ColumnElement[bool]) -> list[tuple[str, str | None]]:
        """Find (id, run_id) pairs of jobs matching all criteria."""
        stmt = select(Job.id, Job.run_id).where(*criteria)
        result = await self._session.execute(stmt)
        return [(row.id, row.run_id) for row in result]

    async def statuses(self, ids: Iterable[str]) -> dict[str, JobStatus]:
        """Current status of each existing job among ids."""
        ids = list(ids)
        if not ids:
            return {}
        result = await self._session.execute(select(Job.id, Job.status).where(Job.id.in_(ids)))
        return {row.id: JobStatus(row.status) for row in result}

    async def get_job(self, *criteria: ColumnElement[bool]) -> Job | None:
        """Load one job row matching the criteria, bypassing stale identity-map copies."""
        stmt = select(Job).where(*criteria).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def update_jobs(
        self,
        *criteria: ColumnElement[bool],
        values: dict[str, Any],
        entry: JobLogEntry | None = None,
    ) -> list[str]:
        """
        Conditionally update every job matching the criteria.

        The WHERE clause is evaluated per row at update time, so this is the
        compare-and-swap every state transition relies on.

        Args:
            *criteria: SQLAlchemy filter expressions over `Job`.
            values: Column values or SQL expressions to set.
            entry: Optional log entry appended to each updated job.

        Returns:
            Ids of the jobs actually updated.
        """
        stmt = (
            update(Job)
            .where(*criteria)
            .values(**values)
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        ids = list(result.scalars().all())
        if ids and entry is not None:
            await self.append_log(ids, entry)
        return ids

    async def delete_jobs(self, *criteria: ColumnElement[bool]) -> list[str]:
        """
        Delete jobs matching the criteria together with their child rows.

        Returns:
            Ids of the jobs deleted.
        """
        stmt = (
            delete(Job)
            .where(*criteria)
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        ids = list(result.scalars().all())
        if ids:
            for model in (JobDependency, JobLogRecord, JobFailureRecord):
                await self._session.execute(delete(model).where(model.job_id.in_(ids)))
        return ids

    async def insert_document(self, doc: JobDocument) -> str:
        """
        Insert a new job from a document, including its log, failures and
        dependency rows.

        Args:
            doc: The document; its `id` is ignored and a new one assigned.

        Returns:
            The new job id.
        """
        job_id = new_id()
        repeat_wait: Any = doc.repeat_wait
        if isinstance(repeat_wait, RepeatSchedule):
            repeat_wait = repeat_wait.model_dump(mode="json")

        await self._session.execute(
            insert(Job).values(
                id=job_id,
                run_id=doc.run_id,
                type=doc.type,
                data=doc.data,
                status=doc.status,
                priority=doc.priority,
                after=doc.after,
                retries=doc.retries,
                retried=doc.retried,
                repeat_retries=doc.repeat_retries,
                retry_until=doc.retry_until,
                retry_wait=doc.retry_wait,
                retry_backoff=doc.retry_backoff,
                repeats=doc.repeats,
                repeated=doc.repeated,
                repeat_until=doc.repeat_until,
                repeat_wait=repeat_wait,
                progress_completed=doc.progress.completed,
                progress_total=doc.progress.total,
                progress_percent=doc.progress.percent,
                result=doc.result,
                work_timeout=doc.work_timeout,
                expires_after=doc.expires_after,
                created=doc.created,
                updated=doc.updated,
            )
        )
        await self.add_dependencies(job_id, doc.depends)
        if doc.resolved:
            await self.add_dependencies(
                job_id,
                doc.resolved,
                resolved_at=doc.updated,
                start=len(doc.depends),
            )
        for entry in doc.log:
            await self.append_log([job_id], entry)
        for failure in doc.failures:
            await self.append_failure(job_id, failure.model_dump(mode="json"), failure.run_id, failure.time or doc.updated)
        logger.debug("Inserted job", extra={"job_id": job_id, "type": doc.type})
        return job_id

    async def append_log(self, job_ids: Iterable[str], entry: JobLogEntry) -> None:
        """Append the same log entry to each job."""
        rows = [
            {
                "job_id": job_id,
                "time": entry.time,
                "run_id": entry.run_id,
                "level": entry.level,
                "message": entry.message,
                "data": entry.data,
            }
            for job_id in job_ids
        ]
        if rows:
            await self._session.execute(insert(JobLogRecord), rows)

    async def append_failure(
        self,
        job_id: str,
        error: dict[str, Any],
        run_id: str | None,
        time: datetime,
    ) -> None:
        """Append a failure record to a job."""
        await self._session.execute(
            insert(JobFailureRecord).values(job_id=job_id, run_id=run_id, time=time, error=error)
        )

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    async def add_dependencies(
        self,
        job_id: str,
        antecedent_ids: Iterable[str],
        resolved_at: datetime | None = None,
        start: int = 0,
    ) -> None:
        """Record antecedents of a job, unresolved unless `resolved_at` is given."""
        rows = [
            {
                "job_id": job_id,
                "antecedent_id": antecedent_id,
                "position": start + position,
                "resolved": resolved_at is not None,
                "resolved_at": resolved_at,
            }
            for position, antecedent_id in enumerate(dict.fromkeys(antecedent_ids))
        ]
        if rows:
            await self._session.execute(insert(JobDependency), rows)

    async def replace_unresolved(self, job_id: str, antecedent_ids: Sequence[str]) -> None:
        """Replace a job's unresolved antecedents, keeping resolved ones."""
        await self.clear_unresolved([job_id])
        existing = set(
            (
                await self._session.execute(
                    select(JobDependency.antecedent_id).where(JobDependency.job_id == job_id)
                )
            ).scalars()
        )
        await self.add_dependencies(
            job_id,
            [a for a in antecedent_ids if a not in existing],
            start=len(existing),
        )

    async def clear_unresolved(self, job_ids: Iterable[str]) -> None:
        """Drop unresolved antecedents of the given jobs."""
        job_ids = list(job_ids)
        if job_ids:
            await self._session.execute(
                delete(JobDependency).where(
                    JobDependency.job_id.in_(job_ids),
                    JobDependency.resolved.is_(False),
                )
            )

    async def unresolved_antecedents(self, job_ids: Iterable[str]) -> list[str]:
        """Antecedent ids still pending for any of the given jobs."""
        job_ids = list(job_ids)
        if not job_ids:
            return []
        stmt = select(JobDependency.antecedent_id).where(
            JobDependency.job_id.in_(job_ids),
            JobDependency.resolved.is_(False),
        )
        return list(dict.fromkeys((await self._session.execute(stmt)).scalars()))

    async def dependents_of(self, antecedent_ids: Iterable[str]) -> list[str]:
        """Ids of jobs still waiting on any of the given antecedents."""
        antecedent_ids = list(antecedent_ids)
        if not antecedent_ids:
            return []
        stmt = select(JobDependency.job_id).where(
            JobDependency.antecedent_id.in_(antecedent_ids),
            JobDependency.resolved.is_(False),
        )
        return list(dict.fromkeys((await self._session.execute(stmt)).scalars()))

    async def resolve_dependency(
        self,
        antecedent_id: str,
        job_ids: Iterable[str],
        resolved_at: datetime,
    ) -> list[str]:
        """
        Mark `antecedent_id` resolved for the given dependents.

        Returns:
            Ids of the dependents whose entry changed.
        """
        job_ids = list(job_ids)
        if not job_ids:
            return []
        stmt = (
            update(JobDependency)
            .where(
                JobDependency.antecedent_id == antecedent_id,
                JobDependency.job_id.in_(job_ids),
                JobDependency.resolved.is_(False),
            )
            .values(resolved=True, resolved_at=resolved_at)
            .returning(JobDependency.job_id)
            .execution_options(synchronize_session=False)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def load_documents(
        self,
        ids: Sequence[str],
        with_log: bool = False,
        with_failures: bool = False,
    ) -> list[JobDocument]:
        """
        Assemble full job documents.

        Args:
            ids: Job ids; missing ones are skipped.
            with_log: Include the job log.
            with_failures: Include failure records.

        Returns:
            Documents in the order of `ids`.
        """
        ids = list(dict.fromkeys(ids))
        if not ids:
            return []

        stmt = select(Job).where(Job.id.in_(ids)).execution_options(populate_existing=True)
        jobs = {job.id: job for job in (await self._session.execute(stmt)).scalars()}

        depends: dict[str, list[str]] = {job_id: [] for job_id in jobs}
        resolved: dict[str, list[str]] = {job_id: [] for job_id in jobs}
        dep_rows = await self._session.execute(
            select(JobDependency)
            .where(JobDependency.job_id.in_(list(jobs)))
            .order_by(JobDependency.position, JobDependency.id)
        )
        for dep in dep_rows.scalars():
            target = resolved if dep.resolved else depends
            target[dep.job_id].append(dep.antecedent_id)

        logs: dict[str, list[JobLogEntry]] = {job_id: [] for job_id in jobs}
        if with_log:
            log_rows = await self._session.execute(
                select(JobLogRecord)
                .where(JobLogRecord.job_id.in_(list(jobs)))
                .order_by(JobLogRecord.id)
            )
            for row in log_rows.scalars():
                logs[row.job_id].append(
                    JobLogEntry(
                        time=row.time,
                        run_id=row.run_id,
                        level=row.level,
                        message=row.message,
                        data=row.data,
                    )
                )

        failures: dict[str, list[JobFailure]] = {job_id: [] for job_id in jobs}
        if with_failures:
            failure_rows = await self._session.execute(
                select(JobFailureRecord)
                .where(JobFailureRecord.job_id.in_(list(jobs)))
                .order_by(JobFailureRecord.id)
            )
            for row in failure_rows.scalars():
                failures[row.job_id].append(
                    JobFailure.model_validate({**row.error, "run_id": row.run_id, "time": row.time})
                )

        return [
            self._to_document(jobs[job_id], depends[job_id], resolved[job_id], logs[job_id], failures[job_id])
            for job_id in ids
            if job_id in jobs
        ]

    @staticmethod
    def _to_document(
        job: Job,
        depends: list[str],
        resolved: list[str],
        log: list[JobLogEntry],
        failures: list[JobFailure],
    ) -> JobDocument:
        return JobDocument(
            id=job.id,
            run_id=job.run_id,
            type=job.type,
            data=job.data or {},
            status=job.status,
            priority=job.priority,
            depends=depends,
            resolved=resolved,
            after=job.after,
            retries=job.retries,
            retried=job.retried,
            repeat_retries=job.repeat_retries,
            retry_until=job.retry_until,
            retry_wait=job.retry_wait,
            retry_backoff=job.retry_backoff,
            repeats=job.repeats,
            repeated=job.repeated,
            repeat_until=job.repeat_until,
            repeat_wait=job.repeat_wait,
            progress=JobProgress(
                completed=job.progress_completed,
                total=job.progress_total,
                percent=job.progress_percent,
            ),
            log=log,
            failures=failures,
            result=job.result,
            work_timeout=job.work_timeout,
            expires_after=job.expires_after,
            created=job.created,
            updated=job.updated,
        )
