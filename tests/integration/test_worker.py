"""
Integration tests for worker functionality.
"""

import asyncio

import pytest

from jobqueue.client import Job, LocalTransport, Transport
from jobqueue.constants import JobStatus
from jobqueue.worker.main import Worker


async def wait_for_status(
    transport: LocalTransport,
    ids: list[str],
    status: JobStatus,
    promote: bool = False,
    timeout: float = 5.0,
) -> list[Job]:
    """Poll until every job has the status; optionally promote retries meanwhile."""
    async with asyncio.timeout(timeout):
        while True:
            jobs = await Job.get_jobs(transport, ids, get_log=True, get_failures=True)
            if all(job.doc.status == status for job in jobs):
                return jobs
            if promote:
                await Job.ready_jobs(transport)
            await asyncio.sleep(0.02)


class DroppingTransport:
    """Wraps a transport and fails the first jobDone call."""

    def __init__(self, inner: LocalTransport):
        self.inner = inner
        self.dropped: list[str] = []

    async def call(self, method: str, *args, **kwargs):
        if method == "jobDone" and not self.dropped:
            self.dropped.append(args[0])
            raise ConnectionError("connection reset")
        return await self.inner.call(method, *args, **kwargs)


def make_worker(transport: Transport, job_types: list[str], **kwargs) -> Worker:
    kwargs.setdefault("concurrency", 2)
    kwargs.setdefault("poll_interval", 0.05)
    return Worker(transport, job_types, worker_id="test-worker", **kwargs)


class TestWorkerIntegration:
    """Integration tests for workers processing jobs end to end."""

    @pytest.mark.asyncio
    async def test_echo_jobs_complete(self, transport: LocalTransport):
        """Test a batch of jobs is claimed, executed and completed."""
        ids = [await Job(transport, "echo", {"n": n}).save() for n in range(5)]
        worker = make_worker(transport, ["echo"], payload=3)
        worker.start()

        try:
            jobs = await wait_for_status(transport, ids, JobStatus.COMPLETED)
        finally:
            await worker.stop("soft")

        by_id = {job.id: job for job in jobs}
        for n, job_id in enumerate(ids):
            job = by_id[job_id]
            assert job.doc.result == {"echo": {"n": n}}
            assert job.doc.progress.percent == 100
            assert job.doc.run_id is None

    @pytest.mark.asyncio
    async def test_lost_report_does_not_stall_payload(self, transport: LocalTransport):
        """Test a report that cannot be delivered leaves the rest of the payload running."""
        ids = [await Job(transport, "echo", {"n": n}).save() for n in range(3)]
        dropping = DroppingTransport(transport)
        worker = make_worker(dropping, ["echo"], concurrency=1, payload=3, work_timeout=60_000)
        worker.start()

        try:
            async with asyncio.timeout(5):
                while not dropping.dropped:
                    await asyncio.sleep(0.01)
            others = [job_id for job_id in ids if job_id not in dropping.dropped]
            await wait_for_status(transport, others, JobStatus.COMPLETED)
        finally:
            await worker.stop("soft")

        [lost] = await Job.get_jobs(transport, dropping.dropped)
        assert lost.doc.status == JobStatus.RUNNING
        assert worker.queue.running() == 0

    @pytest.mark.asyncio
    async def test_failing_job_exhausts_retries(self, transport: LocalTransport):
        """Test a failing job is retried until no attempts remain."""
        job_id = await Job(transport, "failing_job").retry(2, wait=0).save()
        worker = make_worker(transport, ["failing_job"])
        worker.start()

        try:
            [job] = await wait_for_status(transport, [job_id], JobStatus.FAILED, promote=True)
        finally:
            await worker.stop("soft")

        assert job.doc.retried == 3
        assert job.doc.retries == 0
        assert [failure.value for failure in job.doc.failures] == [
            "Intentional failure on attempt 1",
            "Intentional failure on attempt 2",
            "Intentional failure on attempt 3",
        ]

    @pytest.mark.asyncio
    async def test_fatal_failure_skips_retries(self, transport: LocalTransport):
        """Test a fatal failure ends the job on its first attempt."""
        job_id = await Job(transport, "failing_job", {"fatal": True}).retry(5, wait=0).save()
        worker = make_worker(transport, ["failing_job"])
        worker.start()

        try:
            [job] = await wait_for_status(transport, [job_id], JobStatus.FAILED)
        finally:
            await worker.stop("soft")

        assert job.doc.retried == 1
        assert len(job.doc.failures) == 1

    @pytest.mark.asyncio
    async def test_unknown_type_fails_fatally(self, transport: LocalTransport):
        """Test a job without a handler fails without retrying."""
        job_id = await Job(transport, "mystery").retry(3, wait=0).save()
        worker = make_worker(transport, ["mystery"])
        worker.start()

        try:
            [job] = await wait_for_status(transport, [job_id], JobStatus.FAILED)
        finally:
            await worker.stop("soft")

        assert job.doc.failures[0].value == "No handler registered for job type: mystery"

    @pytest.mark.asyncio
    async def test_long_running_job_reports_progress(self, transport: LocalTransport):
        """Test progress reports and log entries reach the job server."""
        job_id = await Job(
            transport,
            "long_running",
            {"duration_seconds": 0.1, "checkpoint_interval": 0.05},
        ).save()
        worker = make_worker(transport, ["long_running"], work_timeout=60_000)
        worker.start()

        try:
            [job] = await wait_for_status(transport, [job_id], JobStatus.COMPLETED)
        finally:
            await worker.stop("soft")

        messages = [entry.message for entry in job.doc.log]
        assert "Long running job finished" in messages
        assert job.doc.result == {"duration": 0.1, "completed": True}
        assert job.doc.expires_after is None

    @pytest.mark.asyncio
    async def test_soft_stop_drains_claimed_jobs(self, transport: LocalTransport):
        """Test a soft stop lets every claimed job finish."""
        ids = [await Job(transport, "sleep", {"duration_seconds": 0.2}).save() for _ in range(3)]
        worker = make_worker(transport, ["sleep"], concurrency=1, prefetch=2)
        worker.start()

        async with asyncio.timeout(5):
            while not any(job.doc.status == JobStatus.RUNNING for job in await Job.get_jobs(transport, ids)):
                await asyncio.sleep(0.01)
        await worker.stop("soft")
        await worker.wait_stopped()

        jobs = await Job.get_jobs(transport, ids)
        assert {job.doc.status for job in jobs} <= {JobStatus.COMPLETED, JobStatus.READY}
        assert any(job.doc.status == JobStatus.COMPLETED for job in jobs)
        assert worker.queue.running() == 0
        assert worker.queue.length() == 0
