"""
Unit tests for the worker pool against an in-memory transport.
"""

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from jobqueue.client import Job
from jobqueue.errors import InvalidArgumentError, JobQueueError, WorkerCallbackError
from jobqueue.worker import JobQueue


class FakeServerTransport:
    """Transport handing out canned ready jobs and recording reports."""

    def __init__(self, count: int = 0, job_type: str = "test"):
        self.ready = [
            {"id": f"job-{i}", "run_id": f"run-{i}", "type": job_type, "status": "running"}
            for i in range(count)
        ]
        self.claims: list[int] = []
        self.done: list[str] = []
        self.failed: dict[str, Any] = {}
        self.get_work_error: Exception | None = None

    async def call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        if method == "getWork":
            if self.get_work_error is not None:
                raise self.get_work_error
            wanted = kwargs["max_jobs"]
            self.claims.append(wanted)
            batch, self.ready = self.ready[:wanted], self.ready[wanted:]
            return batch
        if method == "jobDone":
            self.done.append(args[0])
            return True
        if method == "jobFail":
            self.failed[args[0]] = args[2]
            return True
        return True


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until a condition holds."""
    async with asyncio.timeout(timeout):
        while not condition():
            await asyncio.sleep(0.005)


class TestJobQueueValidation:
    """Tests for constructor validation."""

    @pytest.mark.asyncio
    async def test_invalid_options(self):
        """Test invalid pool options are rejected."""
        transport = FakeServerTransport()

        def worker(job, cb):
            cb()

        with pytest.raises(InvalidArgumentError):
            JobQueue(transport, [], worker)
        with pytest.raises(InvalidArgumentError):
            JobQueue(transport, "test", "not callable")
        with pytest.raises(InvalidArgumentError):
            JobQueue(transport, "test", worker, concurrency=0)
        with pytest.raises(InvalidArgumentError):
            JobQueue(transport, "test", worker, payload=0)
        with pytest.raises(InvalidArgumentError):
            JobQueue(transport, "test", worker, work_timeout=0)


class TestJobQueueProcessing:
    """Tests for claiming and dispatching."""

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        """Test no more than `concurrency` tasks run at once."""
        transport = FakeServerTransport(6)
        active = 0
        peak = 0

        async def worker(job: Job, cb):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            await job.done()
            active -= 1
            cb()

        queue = JobQueue(transport, "test", worker, concurrency=2, poll_interval=None)
        await wait_until(lambda: len(transport.done) == 6)
        await queue.shutdown(quiet=True)

        assert peak == 2
        assert sorted(transport.done) == sorted(f"job-{i}" for i in range(6))
        assert max(transport.claims) <= 2

    @pytest.mark.asyncio
    async def test_payload_batches(self):
        """Test a worker receives lists of up to `payload` jobs."""
        transport = FakeServerTransport(7)
        batches: list[int] = []

        async def worker(jobs: list[Job], cb):
            batches.append(len(jobs))
            for job in jobs:
                await job.done()
            cb()

        queue = JobQueue(transport, "test", worker, payload=3, poll_interval=None)
        await wait_until(lambda: len(transport.done) == 7)
        await queue.shutdown(quiet=True)

        assert sum(batches) == 7
        assert max(batches) <= 3

    @pytest.mark.asyncio
    async def test_task_ids_assigned(self):
        """Test each dispatched job carries its task id."""
        transport = FakeServerTransport(2)
        seen: list[str | None] = []

        def worker(job: Job, cb):
            seen.append(job.task_id)
            cb()

        queue = JobQueue(transport, "test", worker, poll_interval=None)
        await wait_until(lambda: len(seen) == 2)
        await queue.shutdown(quiet=True)

        assert seen == ["Task_0", "Task_1"]

    @pytest.mark.asyncio
    async def test_worker_exception_fails_jobs(self):
        """Test a raising worker fails its jobs and frees its slot."""
        transport = FakeServerTransport(2)
        errors: list[BaseException] = []

        async def worker(job: Job, cb):
            raise RuntimeError("worker exploded")

        queue = JobQueue(transport, "test", worker, poll_interval=None, error_callback=errors.append)
        await wait_until(lambda: len(transport.failed) == 2)
        await queue.shutdown(quiet=True)

        assert transport.failed["job-0"] == {"value": "worker exploded"}
        assert queue.running() == 0
        assert any(isinstance(e, RuntimeError) for e in errors)

    @pytest.mark.asyncio
    async def test_duplicate_callback_reported(self):
        """Test calling the completion callback twice is reported once and ignored."""
        transport = FakeServerTransport(1)
        errors: list[BaseException] = []

        def worker(job: Job, cb):
            cb()
            cb()

        queue = JobQueue(transport, "test", worker, poll_interval=None, error_callback=errors.append)
        await wait_until(lambda: bool(errors))
        await queue.shutdown(quiet=True)

        assert len(errors) == 1
        assert isinstance(errors[0], WorkerCallbackError)
        assert queue.running() == 0

    @pytest.mark.asyncio
    async def test_duplicate_callback_raises_when_strict(self):
        """Test a strict pool raises on a repeated completion callback."""
        transport = FakeServerTransport(1)
        errors: list[BaseException] = []
        raised: list[WorkerCallbackError] = []

        def worker(job: Job, cb):
            cb()
            try:
                cb()
            except WorkerCallbackError as e:
                raised.append(e)

        queue = JobQueue(
            transport,
            "test",
            worker,
            poll_interval=None,
            callback_strict=True,
            error_callback=errors.append,
        )
        await wait_until(lambda: bool(raised))
        await queue.shutdown(quiet=True)

        assert len(raised) == 1
        assert errors == raised
        assert queue.running() == 0

    @pytest.mark.asyncio
    async def test_get_work_error_reported(self):
        """Test a failing claim is reported to the error callback."""
        transport = FakeServerTransport()
        transport.get_work_error = ConnectionError("server unreachable")
        errors: list[BaseException] = []

        queue = JobQueue(transport, "test", lambda job, cb: cb(), poll_interval=None, error_callback=errors.append)
        await wait_until(lambda: bool(errors))
        await queue.shutdown(quiet=True)

        assert isinstance(errors[0], JobQueueError)
        assert "server unreachable" in str(errors[0])

    @pytest.mark.asyncio
    async def test_pause_stops_dispatch(self):
        """Test a paused pool dispatches nothing until resumed."""
        transport = FakeServerTransport(1)
        handled: list[str] = []

        def worker(job: Job, cb):
            handled.append(job.id)
            cb()

        queue = JobQueue(transport, "test", worker, poll_interval=None).pause()
        await asyncio.sleep(0.05)
        assert handled == []

        queue.resume()
        await wait_until(lambda: handled == ["job-0"])
        await queue.shutdown(quiet=True)


class TestJobQueueShutdown:
    """Tests for the three shutdown levels."""

    @pytest.mark.asyncio
    async def test_normal_shutdown_fails_queued_jobs(self):
        """Test a normal shutdown finishes running tasks and fails queued jobs."""
        transport = FakeServerTransport(3)
        release = asyncio.Event()
        started: list[str] = []

        async def worker(job: Job, cb):
            started.append(job.id)
            await release.wait()
            await job.done()
            cb()

        queue = JobQueue(transport, "test", worker, prefetch=2, poll_interval=None)
        await wait_until(lambda: started == ["job-0"] and queue.length() == 2)

        shutdown = asyncio.create_task(queue.shutdown(quiet=True))
        await asyncio.sleep(0.01)
        release.set()
        await shutdown

        assert transport.done == ["job-0"]
        assert set(transport.failed) == {"job-1", "job-2"}
        assert transport.failed["job-1"] == {"value": "Worker shutdown"}

    @pytest.mark.asyncio
    async def test_hard_shutdown_fails_running_jobs(self):
        """Test a hard shutdown fails in-flight jobs without waiting."""
        transport = FakeServerTransport(1)
        started = asyncio.Event()
        release = asyncio.Event()

        async def worker(job: Job, cb):
            started.set()
            await release.wait()
            cb()

        queue = JobQueue(transport, "test", worker, poll_interval=None)
        await started.wait()
        await queue.shutdown(level="hard", quiet=True)

        assert set(transport.failed) == {"job-0"}
        assert transport.done == []

        release.set()
        await wait_until(lambda: queue.running() == 0)

    @pytest.mark.asyncio
    async def test_soft_shutdown_drains(self):
        """Test a soft shutdown runs every claimed job and fails none."""
        transport = FakeServerTransport(3)
        release = asyncio.Event()

        async def worker(job: Job, cb):
            await release.wait()
            await job.done()
            cb()

        queue = JobQueue(transport, "test", worker, prefetch=2, poll_interval=None)
        await wait_until(lambda: queue.running() == 1 and queue.length() == 2)

        shutdown = asyncio.create_task(queue.shutdown(level="soft", quiet=True))
        await asyncio.sleep(0.01)
        release.set()
        await shutdown

        assert sorted(transport.done) == ["job-0", "job-1", "job-2"]
        assert transport.failed == {}

    @pytest.mark.asyncio
    async def test_shutdown_callback_and_invalid_level(self):
        """Test the shutdown callback and level validation."""
        transport = FakeServerTransport()
        queue = JobQueue(transport, "test", lambda job, cb: cb(), poll_interval=None)
        finished: list[bool] = []

        with pytest.raises(InvalidArgumentError):
            await queue.shutdown(level="gentle")

        await queue.shutdown(quiet=True, callback=lambda: finished.append(True))
        assert finished == [True]

    @pytest.mark.asyncio
    async def test_claims_fill_slots_then_soft_shutdown(self):
        """Test one claim fills every slot's payload and a soft shutdown empties the pool."""
        transport = FakeServerTransport(10)
        release = asyncio.Event()
        finished: list[bool] = []

        async def worker(jobs: list[Job], cb):
            await release.wait()
            for job in jobs:
                await job.done()
            cb()

        queue = JobQueue(transport, "test", worker, concurrency=2, payload=3, poll_interval=None)
        await wait_until(lambda: queue.running() == 2)

        assert transport.claims == [6]
        assert queue.length() + 3 * queue.running() == 6

        shutdown = asyncio.create_task(
            queue.shutdown(level="soft", quiet=True, callback=lambda: finished.append(True))
        )
        await asyncio.sleep(0.01)
        release.set()
        await shutdown

        assert queue.running() == 0
        assert finished == [True]
        assert len(transport.done) == 6
        assert transport.claims == [6]
        assert len(transport.ready) == 4
