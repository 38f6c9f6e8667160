"""
Integration tests for the job server's operation surface and lifecycle.
"""

import asyncio

import pytest

from jobqueue.client import Job, LocalTransport
from jobqueue.constants import JobStatus
from jobqueue.errors import PermissionDeniedError, UnknownMethodError
from jobqueue.server import JobServer, JobStateMachine
from jobqueue.types.events import MethodEvent


class TestInvoke:
    """Tests for invoking operations by name."""

    @pytest.mark.asyncio
    async def test_methods_listed(self, server: JobServer):
        """Test every operation is on the surface."""
        assert set(server.methods) == {
            "startServer",
            "shutdownServer",
            "getJob",
            "getWork",
            "jobSave",
            "jobRemove",
            "jobPause",
            "jobResume",
            "jobReady",
            "jobCancel",
            "jobRestart",
            "jobRerun",
            "jobLog",
            "jobProgress",
            "jobDone",
            "jobFail",
        }

    @pytest.mark.asyncio
    async def test_unknown_method(self, server: JobServer):
        """Test invoking an unknown name fails."""
        with pytest.raises(UnknownMethodError):
            await server.invoke("jobExplode", trusted=True)

    @pytest.mark.asyncio
    async def test_untrusted_denied_by_default(self, server: JobServer):
        """Test remote callers are denied without allow rules."""
        with pytest.raises(PermissionDeniedError):
            await server.invoke("jobSave", [{"type": "email"}], caller_id="stranger")

    @pytest.mark.asyncio
    async def test_untrusted_allowed_by_rule(self, server: JobServer):
        """Test an allowed caller can invoke within its group only."""
        server.allow(creator=["producer"])
        remote = LocalTransport(server, caller_id="producer", trusted=False)

        job_id = await Job(remote, "email").save()

        assert job_id is not None
        with pytest.raises(PermissionDeniedError):
            await Job.get_work(remote, "email")

    @pytest.mark.asyncio
    async def test_listeners_receive_events(self, server: JobServer, transport: LocalTransport):
        """Test listeners see successful and failed calls."""
        events: list[MethodEvent] = []
        server.add_listener(events.append)

        job_id = await Job(transport, "email").save()
        with pytest.raises(PermissionDeniedError):
            await server.invoke("jobRemove", [job_id], caller_id="stranger")
        server.remove_listener(events.append)
        await Job(transport, "email").save()

        assert [event.method for event in events] == ["jobSave", "jobRemove"]
        assert events[0].event_type == "call"
        assert events[0].return_value == job_id
        assert events[0].caller == "[SERVER]"
        assert events[1].error is not None
        assert events[1].caller == "stranger"

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_fail_the_call(self, server: JobServer, transport: LocalTransport):
        """Test an operation still returns when a listener raises."""
        events: list[MethodEvent] = []

        def broken(event: MethodEvent) -> None:
            raise RuntimeError("listener broke")

        server.add_listener(broken)
        server.add_listener(events.append)

        job_id = await Job(transport, "email").save()

        assert job_id is not None
        assert (await Job.get_job(transport, job_id)).doc.status == JobStatus.READY
        assert [event.method for event in events] == ["jobSave", "getJob"]

    @pytest.mark.asyncio
    async def test_rules_see_keyword_options(self, server: JobServer):
        """Test predicates receive keyword options after the positional arguments."""
        seen: list[list] = []

        def no_forcing(caller_id, method, params) -> bool:
            seen.append(list(params))
            return not (params and isinstance(params[-1], dict) and params[-1].get("force"))

        server.allow(jobReady=no_forcing)

        assert await server.invoke("jobReady", [["0" * 32]], caller_id="ops") is False
        with pytest.raises(PermissionDeniedError):
            await server.invoke("jobReady", [["0" * 32]], {"force": True}, caller_id="ops")
        assert seen == [[["0" * 32]], [["0" * 32], {"force": True}]]


class TestLifecycle:
    """Tests for starting and shutting down the server."""

    @pytest.mark.asyncio
    async def test_starts_stopped(self, state_machine: JobStateMachine):
        """Test a new server hands out no work until started."""
        server = JobServer(state_machine)
        transport = LocalTransport(server)
        await Job(transport, "email").save()

        assert server.stopped is True
        assert await Job.get_work(transport, "email") is None

        await Job.start_server(transport)
        try:
            assert await Job.get_work(transport, "email") is not None
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_shutdown_fails_running_jobs(self, server: JobServer, transport: LocalTransport, claim):
        """Test running jobs are failed once the grace period ends."""
        await Job(transport, "email").save()
        job = await claim("email")

        assert await Job.shutdown_server(transport, timeout=10) is True
        assert server.stopped is True
        assert await Job.get_work(transport, "email") is None

        await server.wait_shutdown()

        refreshed = await Job.get_job(transport, job.id, get_failures=True)
        assert refreshed.doc.status == JobStatus.FAILED
        assert refreshed.doc.failures[0].value == "Running at Job Server shutdown."

    @pytest.mark.asyncio
    async def test_restart_cancels_pending_shutdown(self, server: JobServer, transport: LocalTransport, claim):
        """Test starting again within the grace period keeps running jobs."""
        await Job(transport, "email").save()
        job = await claim("email")

        await server.shutdown_server(timeout=60_000)
        await server.start_server()
        await asyncio.sleep(0.01)

        assert server.stopped is False
        assert (await Job.get_job(transport, job.id)).doc.status == JobStatus.RUNNING
