"""
Dependency resolution between jobs.

An antecedent is a job listed in another job's `depends`; a dependent is a
job listing a given id there. These helpers work inside the caller's
transaction; cancellation itself is left to the state machine.
"""

import logging
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from jobqueue.clock import add_ms, utcnow
from jobqueue.constants import CANCELLABLE_STATUSES, JobLogLevel, JobStatus
from jobqueue.db.models import Job
from jobqueue.db.repository import JobRepository
from jobqueue.types.job import JobDocument, log_entry

logger = logging.getLogger(__name__)


@dataclass
class DependencyCheck:
    """Outcome of checking a job's antecedents."""

    job_id: str | None
    resolved: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def cancel(self) -> bool:
        """The job can never run and must be cancelled."""
        return bool(self.failed or self.cancelled or self.removed)


async def check_deps(repo: JobRepository, doc: JobDocument, dry_run: bool = True) -> DependencyCheck:
    """
    Inspect the antecedents of a saved job.

    Completed antecedents are resolved; missing, failed or cancelled ones
    mean the job must be cancelled. Unless `dry_run`, resolutions are
    persisted (only while the job is still waiting) and the reasons logged
    on the job.

    Args:
        repo: Repository bound to the current transaction.
        doc: The job document; must carry its id.
        dry_run: Compute only, write nothing.

    Returns:
        The check result.
    """
    check = DependencyCheck(job_id=doc.id)
    if not doc.depends:
        return check

    statuses = await repo.statuses(doc.depends)
    for antecedent_id in doc.depends:
        status = statuses.get(antecedent_id)
        if status is None:
            check.removed.append(antecedent_id)
        elif status == JobStatus.COMPLETED:
            check.resolved.append(antecedent_id)
        elif status == JobStatus.FAILED:
            check.failed.append(antecedent_id)
        elif status == JobStatus.CANCELLED:
            check.cancelled.append(antecedent_id)

    if dry_run or doc.id is None:
        return check

    now = utcnow()
    for antecedent_id in check.removed:
        await repo.append_log(
            [doc.id],
            log_entry(f"Antecedent job {antecedent_id} missing at save", level=JobLogLevel.WARNING, time=now),
        )
    if check.failed:
        await repo.append_log(
            [doc.id],
            log_entry("Antecedent job failed before save", level=JobLogLevel.WARNING, time=now),
        )
    if check.cancelled:
        await repo.append_log(
            [doc.id],
            log_entry("Antecedent job cancelled before save", level=JobLogLevel.WARNING, time=now),
        )

    if check.resolved:
        waiting = await repo.find_ids(Job.id == doc.id, Job.status == JobStatus.WAITING)
        if waiting:
            for antecedent_id in check.resolved:
                await repo.resolve_dependency(antecedent_id, waiting, now)
            await repo.update_jobs(Job.id == doc.id, values={"updated": now})
        else:
            check.resolved = []

    if check.cancel:
        logger.info(
            "Job antecedents cannot complete",
            extra={
                "job_id": doc.id,
                "failed": check.failed,
                "cancelled": check.cancelled,
                "removed": check.removed,
            },
        )
    return check


async def ids_of_deps(
    repo: JobRepository,
    ids: Iterable[str],
    antecedents: bool,
    dependents: bool,
    statuses: Collection[JobStatus],
    exclude: Collection[str] = (),
) -> list[str]:
    """
    One step of the dependency closure used by cascading cancel/restart.

    Args:
        repo: Repository bound to the current transaction.
        ids: Starting job ids.
        antecedents: Include the unresolved antecedents of `ids`.
        dependents: Include jobs still waiting on any of `ids`.
        statuses: Only return jobs currently in one of these statuses.
        exclude: Ids already visited.

    Returns:
        Matching job ids, without duplicates.
    """
    ids = list(ids)
    candidates: list[str] = []
    if antecedents:
        candidates.extend(await repo.unresolved_antecedents(ids))
    if dependents:
        candidates.extend(await repo.dependents_of(ids))
    candidates = [c for c in dict.fromkeys(candidates) if c not in exclude]
    if not candidates:
        return []
    return await repo.find_ids(Job.id.in_(candidates), Job.status.in_(list(statuses)))


async def resolve_dependents(
    repo: JobRepository,
    antecedent_id: str,
    run_id: str | None,
    delay_deps: int | None = None,
    now: datetime | None = None,
) -> list[str]:
    """
    Resolve a completed job in every job still waiting on it.

    Args:
        repo: Repository bound to the current transaction.
        antecedent_id: The job that just completed.
        run_id: Run that completed it, recorded in the dependents' logs.
        delay_deps: Optional minimum delay (ms) before dependents become due.
        now: Reference time.

    Returns:
        Ids of the dependents resolved.
    """
    now = now or utcnow()
    pending = await repo.dependents_of([antecedent_id])
    if not pending:
        return []
    waiting = await repo.find_ids(Job.id.in_(pending), Job.status.in_(list(CANCELLABLE_STATUSES)))
    resolved = await repo.resolve_dependency(antecedent_id, waiting, now)
    if not resolved:
        return []

    entry = log_entry(
        "Dependency resolved",
        run_id=run_id,
        data={"dependency": antecedent_id, "run_id": run_id},
        time=now,
    )
    await repo.update_jobs(Job.id.in_(resolved), values={"updated": now}, entry=entry)
    if delay_deps:
        earliest = add_ms(now, delay_deps)
        await repo.update_jobs(Job.id.in_(resolved), Job.after < earliest, values={"after": earliest})
    return resolved
