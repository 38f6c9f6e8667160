"""
Integration tests for job state transitions.
"""

import asyncio
from datetime import timedelta

import pytest
from pydantic import ValidationError

from jobqueue.client import Job, LocalTransport
from jobqueue.clock import utcnow
from jobqueue.constants import FOREVER, JobStatus
from jobqueue.errors import InvalidArgumentError
from jobqueue.server import JobStateMachine
from jobqueue.types.job import JobDocument


class TestSaveAndClaim:
    """Tests for saving jobs and claiming them."""

    @pytest.mark.asyncio
    async def test_save_promotes_due_job(self, transport: LocalTransport, sample_job_data):
        """Test a job due now is ready as soon as it is saved."""
        job = Job(transport, "email", sample_job_data)
        job_id = await job.save()

        assert job_id is not None
        saved = await Job.get_job(transport, job_id, get_log=True)
        assert saved.doc.status == JobStatus.READY
        assert saved.data == sample_job_data
        messages = [entry.message for entry in saved.doc.log]
        assert messages[:3] == ["Constructed", "Job Submitted", "Promoted to ready"]

    @pytest.mark.asyncio
    async def test_delayed_job_waits(self, transport: LocalTransport):
        """Test a job due later stays waiting and is not claimable."""
        job_id = await Job(transport, "email").delay(60_000).save()

        saved = await Job.get_job(transport, job_id)
        assert saved.doc.status == JobStatus.WAITING
        assert await Job.get_work(transport, "email") is None

    @pytest.mark.asyncio
    async def test_save_rejects_running_status(self, state_machine: JobStateMachine):
        """Test only waiting or paused documents can be saved."""
        with pytest.raises(InvalidArgumentError):
            await state_machine.save(JobDocument(type="email", status=JobStatus.RUNNING))

    @pytest.mark.asyncio
    async def test_get_work_claims_and_marks_running(self, transport: LocalTransport, claim):
        """Test claiming sets the run id and decrements retries."""
        await Job(transport, "email").retry(2).save()

        job = await claim("email", work_timeout=30_000)

        assert job.doc.status == JobStatus.RUNNING
        assert job.run_id is not None
        assert job.doc.retries == 2
        assert job.doc.retried == 1
        assert job.doc.work_timeout == 30_000
        assert job.doc.expires_after > utcnow()

    @pytest.mark.asyncio
    async def test_claim_order_by_priority(self, transport: LocalTransport):
        """Test lower priority values are claimed first."""
        low = await Job(transport, "report").priority("low").save()
        normal = await Job(transport, "report").save()
        critical = await Job(transport, "report").priority("critical").save()

        jobs = await Job.get_work(transport, "report", max_jobs=3)

        assert [job.id for job in jobs] == [critical, normal, low]

    @pytest.mark.asyncio
    async def test_claim_filters_types(self, transport: LocalTransport):
        """Test only the requested types are claimed."""
        await Job(transport, "email").save()
        sms = await Job(transport, "sms").save()

        jobs = await Job.get_work(transport, ["sms", "push"], max_jobs=5)

        assert [job.id for job in jobs] == [sms]

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_jobs(self, state_machine: JobStateMachine, transport: LocalTransport):
        """Test racing claimers each get distinct jobs."""
        for _ in range(10):
            await Job(transport, "batch").save()

        results = await asyncio.gather(
            *(state_machine.get_work("batch", max_jobs=3) for _ in range(5))
        )

        claimed = [doc.id for docs in results for doc in docs]
        assert len(claimed) == 10
        assert len(set(claimed)) == 10

    @pytest.mark.asyncio
    async def test_get_job_list_and_missing(self, transport: LocalTransport, state_machine: JobStateMachine):
        """Test fetching several jobs and a missing one."""
        first = await Job(transport, "email").save()
        second = await Job(transport, "email").save()

        docs = await state_machine.get_job([first, second, "missing"])

        assert {doc.id for doc in docs} == {first, second}
        assert await state_machine.get_job("missing") is None
        assert await state_machine.get_job([]) == []


class TestRunningJobReports:
    """Tests for progress, log, done and fail."""

    @pytest.mark.asyncio
    async def test_progress_updates_percent(self, transport: LocalTransport, claim):
        """Test progress is stored with its percentage."""
        await Job(transport, "email").save()
        job = await claim("email")

        assert await job.progress(1, 4) is True

        refreshed = await job.refresh()
        assert refreshed.doc.progress.percent == 25

    @pytest.mark.asyncio
    async def test_progress_rejects_invalid_values(self, state_machine: JobStateMachine, transport: LocalTransport, claim):
        """Test the server rejects impossible progress."""
        await Job(transport, "email").save()
        job = await claim("email")

        with pytest.raises(InvalidArgumentError):
            await state_machine.job_progress(job.id, job.run_id, 5, 4)
        with pytest.raises(ValidationError):
            await state_machine.job_progress(job.id, job.run_id, 1, 0)

    @pytest.mark.asyncio
    async def test_progress_extends_run_deadline(self, transport: LocalTransport, claim):
        """Test reporting progress pushes the run deadline forward."""
        await Job(transport, "email").save()
        job = await claim("email", work_timeout=60_000)
        first_deadline = job.doc.expires_after

        await asyncio.sleep(0.01)
        await job.progress(1, 2)

        refreshed = await job.refresh()
        assert refreshed.doc.expires_after > first_deadline

    @pytest.mark.asyncio
    async def test_stale_run_rejected(self, state_machine: JobStateMachine, transport: LocalTransport, claim):
        """Test reports for another run change nothing."""
        await Job(transport, "email").save()
        job = await claim("email")

        assert await state_machine.job_done(job.id, "stale-run", {}) is False
        assert await state_machine.job_fail(job.id, "stale-run", {"value": "x"}) is False
        assert await state_machine.job_progress(job.id, "stale-run", 1, 2) is False

    @pytest.mark.asyncio
    async def test_log_appends_entry(self, transport: LocalTransport, claim):
        """Test logging from a worker appends to the job log."""
        await Job(transport, "email").save()
        job = await claim("email")

        assert await job.log("halfway there", level="success", data={"step": 2}) is True

        refreshed = await job.refresh(get_log=True)
        entry = refreshed.doc.log[-1]
        assert entry.message == "halfway there"
        assert entry.run_id == job.run_id
        assert entry.data == {"step": 2}

    @pytest.mark.asyncio
    async def test_log_missing_job(self, state_machine: JobStateMachine):
        """Test logging to an unknown job reports False."""
        assert await state_machine.job_log("missing", None, "hello") is False

    @pytest.mark.asyncio
    async def test_done_completes(self, transport: LocalTransport, claim):
        """Test completing a job stores the result and clears the run."""
        await Job(transport, "email").save()
        job = await claim("email", work_timeout=10_000)

        assert await job.done({"sent": True}) is True

        refreshed = await job.refresh()
        assert refreshed.doc.status == JobStatus.COMPLETED
        assert refreshed.doc.result == {"sent": True}
        assert refreshed.doc.progress.percent == 100
        assert refreshed.run_id is None
        assert refreshed.doc.expires_after is None

    @pytest.mark.asyncio
    async def test_fail_retries_then_fails(self, transport: LocalTransport, claim):
        """Test a failure with retries left waits, and the last one fails."""
        await Job(transport, "email").retry(1, wait=0).save()

        job = await claim("email")
        assert await job.fail("smtp down") is True
        refreshed = await job.refresh(get_failures=True)
        assert refreshed.doc.status == JobStatus.WAITING
        assert refreshed.doc.failures[0].value == "smtp down"

        await Job.ready_jobs(transport)
        job = await claim("email")
        assert await job.fail("smtp still down") is True

        refreshed = await job.refresh(get_failures=True)
        assert refreshed.doc.status == JobStatus.FAILED
        assert refreshed.doc.retries == 0
        assert len(refreshed.doc.failures) == 2

    @pytest.mark.asyncio
    async def test_fatal_fail_skips_retries(self, transport: LocalTransport, claim):
        """Test a fatal failure ignores remaining retries."""
        await Job(transport, "email").retry(5, wait=0).save()
        job = await claim("email")

        await job.fail({"reason": "bad address"}, fatal=True)

        refreshed = await job.refresh()
        assert refreshed.doc.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_deadline_stops_retries(self, transport: LocalTransport, claim):
        """Test no retry is scheduled past retry_until."""
        until = utcnow() + timedelta(seconds=30)
        await Job(transport, "email").retry(3, until=until, wait=60_000).save()
        job = await claim("email")

        await job.fail("timeout")

        refreshed = await job.refresh()
        assert refreshed.doc.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_exponential_backoff(self, transport: LocalTransport, claim):
        """Test the retry delay doubles with each attempt."""
        await Job(transport, "email").retry(3, wait=1000, backoff="exponential").save()

        job = await claim("email")
        before = utcnow()
        await job.fail("first")
        first = (await job.refresh()).doc.after

        await Job.ready_jobs(transport, [job.id], time=utcnow() + timedelta(seconds=5))
        job = await claim("email")
        await job.fail("second")
        second = (await job.refresh()).doc.after

        assert timedelta(milliseconds=900) < first - before < timedelta(seconds=2)
        assert second - utcnow() > timedelta(milliseconds=1500)


class TestManagement:
    """Tests for pause, resume, ready, cancel, restart, rerun and remove."""

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, transport: LocalTransport):
        """Test a paused job is not claimable until resumed."""
        job = Job(transport, "email")
        await job.save()

        assert await job.pause() is True
        assert await Job.get_work(transport, "email") is None
        assert (await job.refresh()).doc.status == JobStatus.PAUSED

        assert await job.resume() is True
        assert (await job.refresh()).doc.status == JobStatus.READY

    @pytest.mark.asyncio
    async def test_save_paused_then_resubmit(self, transport: LocalTransport):
        """Test a job saved paused can be edited and resubmitted."""
        job = Job(transport, "email", {"draft": True})
        await job.pause()
        job_id = await job.save()
        assert (await job.refresh()).doc.status == JobStatus.PAUSED

        job.doc.data = {"draft": False}
        job.doc.status = JobStatus.PAUSED
        assert await job.save() == job_id

        refreshed = await job.refresh(get_log=True)
        assert refreshed.data == {"draft": False}
        assert refreshed.doc.status == JobStatus.READY
        assert "Job Resubmitted" in [entry.message for entry in refreshed.doc.log]

    @pytest.mark.asyncio
    async def test_ready_with_time(self, transport: LocalTransport):
        """Test promoting jobs due before a given time."""
        job_id = await Job(transport, "email").delay(60_000).save()

        assert await Job.ready_jobs(transport) is False
        assert await Job.ready_jobs(transport, time=utcnow() + timedelta(minutes=2)) is True
        assert (await Job.get_job(transport, job_id)).doc.status == JobStatus.READY

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, transport: LocalTransport, claim):
        """Test cancelling a running job clears its run."""
        await Job(transport, "email").save()
        job = await claim("email", work_timeout=10_000)

        assert await job.cancel() is True

        refreshed = await Job.get_job(transport, job.id)
        assert refreshed.doc.status == JobStatus.CANCELLED
        assert refreshed.run_id is None
        assert await job.done() is False

    @pytest.mark.asyncio
    async def test_cancel_completed_is_noop(self, transport: LocalTransport, claim):
        """Test a completed job cannot be cancelled."""
        await Job(transport, "email").save()
        job = await claim("email")
        await job.done()

        assert await job.cancel() is False

    @pytest.mark.asyncio
    async def test_restart_adds_retries(self, transport: LocalTransport, claim):
        """Test restarting a failed job grants more attempts."""
        await Job(transport, "email").retry(0, wait=0).save()
        job = await claim("email")
        await job.fail("broken")
        assert (await job.refresh()).doc.status == JobStatus.FAILED

        assert await job.restart(retries=2) is True

        refreshed = await job.refresh()
        assert refreshed.doc.status == JobStatus.READY
        assert refreshed.doc.retries == 2

    @pytest.mark.asyncio
    async def test_restart_clamps_to_forever(self, transport: LocalTransport):
        """Test restart never pushes retries past the forever sentinel."""
        job = Job(transport, "email").retry()
        await job.save()
        await job.cancel()

        await job.restart(retries=10)

        assert (await job.refresh()).doc.retries == FOREVER

    @pytest.mark.asyncio
    async def test_rerun_completed(self, transport: LocalTransport, claim):
        """Test a completed job can be cloned as a new job."""
        await Job(transport, "email", {"n": 1}).save()
        job = await claim("email")
        await job.done()

        new_id = await job.rerun(wait=0)

        assert isinstance(new_id, str) and new_id != job.id
        clone = await Job.get_job(transport, new_id, get_log=True)
        assert clone.data == {"n": 1}
        assert clone.doc.status == JobStatus.READY
        assert clone.doc.repeated == 1
        assert clone.doc.log[0].message == "Rerunning job"
        assert clone.doc.log[0].data["previous_job"]["id"] == job.id

    @pytest.mark.asyncio
    async def test_rerun_not_completed(self, transport: LocalTransport):
        """Test only completed jobs can be rerun."""
        job = Job(transport, "email")
        await job.save()

        assert await job.rerun() is False

    @pytest.mark.asyncio
    async def test_remove_only_terminal(self, transport: LocalTransport, claim):
        """Test removal is limited to terminal jobs and is idempotent."""
        await Job(transport, "email").save()
        job = await claim("email")

        assert await job.remove() is False
        await job.done()
        assert await job.remove() is True
        assert await job.remove() is False
        assert await Job.get_job(transport, job.id) is None


class TestRepeats:
    """Tests for repeating jobs."""

    @pytest.mark.asyncio
    async def test_done_schedules_next_repeat(self, transport: LocalTransport, claim):
        """Test completing a repeating job creates the next occurrence."""
        await Job(transport, "digest").repeat(2, wait=0).save()
        job = await claim("digest")

        next_id = await job.done(repeat_id=True)

        assert isinstance(next_id, str)
        clone = await Job.get_job(transport, next_id)
        assert clone.doc.repeats == 1
        assert clone.doc.repeated == 1
        assert clone.doc.status == JobStatus.READY

    @pytest.mark.asyncio
    async def test_last_repeat_stops(self, transport: LocalTransport, claim):
        """Test no recurrence is made once repeats are used up."""
        await Job(transport, "digest").repeat(1, wait=0).save()
        first = await claim("digest")
        await first.done()

        second = await claim("digest")
        assert await second.done(repeat_id=True) is True
        assert await Job.get_work(transport, "digest") is None

    @pytest.mark.asyncio
    async def test_repeat_until_respected(self, transport: LocalTransport, claim):
        """Test no recurrence is scheduled beyond repeat_until."""
        until = utcnow() + timedelta(seconds=30)
        await Job(transport, "digest").repeat(until=until, wait=60_000).save()
        job = await claim("digest")

        assert await job.done(repeat_id=True) is True

    @pytest.mark.asyncio
    async def test_cancel_repeats_replaces_existing(self, transport: LocalTransport):
        """Test saving a forever-repeating job can cancel its predecessors."""
        old = Job(transport, "heartbeat").repeat(wait=60_000)
        await old.save()

        new = Job(transport, "heartbeat").repeat(wait=60_000)
        await new.save(cancel_repeats=True)

        assert (await old.refresh()).doc.status == JobStatus.CANCELLED
        assert (await new.refresh()).doc.status == JobStatus.READY

    @pytest.mark.asyncio
    async def test_scheduled_repeat_due_at_next_occurrence(self, transport: LocalTransport):
        """Test a scheduled job is due at its first occurrence."""
        job = Job(transport, "nightly").repeat(schedule="FREQ=DAILY;BYHOUR=3;BYMINUTE=0;BYSECOND=0")
        await job.save()

        refreshed = await job.refresh()
        assert refreshed.doc.after.hour == 3
        assert refreshed.doc.after > utcnow()
        assert refreshed.doc.repeat_wait.dtstart is not None

    @pytest.mark.asyncio
    async def test_exhausted_schedule_not_saved(self, transport: LocalTransport):
        """Test a schedule with no occurrence before repeat_until is declined."""
        job = Job(transport, "nightly").repeat(
            schedule="FREQ=YEARLY;BYMONTH=1;BYMONTHDAY=1",
            until=utcnow() + timedelta(hours=1),
        )

        assert await job.save() is None
