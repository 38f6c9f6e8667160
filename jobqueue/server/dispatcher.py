"""
Job server: the named operation surface over the state machine.

Remote callers reach operations by their camelCase names through
`JobServer.invoke`, which checks permissions, traces and times the call
and emits a `MethodEvent` for it. The server also owns the promotion
sweeper and the started/stopped lifecycle.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from jobqueue.config import get_settings
from jobqueue.constants import (
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
    MSG_SERVER_SHUTDOWN,
    SPAN_INVOKE_METHOD,
)
from jobqueue.errors import PermissionDeniedError, UnknownMethodError
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import get_tracer
from jobqueue.server.permissions import PermissionTable
from jobqueue.server.state_machine import JobStateMachine
from jobqueue.sweeper.main import Promoter
from jobqueue.types.events import MethodEvent
from jobqueue.types.job import JobDocument

logger = logging.getLogger(__name__)

MethodListener = Callable[[MethodEvent], None]


class JobServer:
    """
    Authority over one job store.

    The server starts stopped: `getWork` hands out nothing and the sweeper
    is idle until `startServer` is invoked.

    Args:
        state_machine: State machine bound to the job store.
        permissions: Allow/deny rules for untrusted callers; deny-all by default.
        promote_interval: Seconds between sweeper rounds.
        shutdown_timeout_ms: Default grace period of `shutdownServer`.
    """

    def __init__(
        self,
        state_machine: JobStateMachine,
        permissions: PermissionTable | None = None,
        promote_interval: float | None = None,
        shutdown_timeout_ms: int | None = None,
    ):
        settings = get_settings()
        self.state_machine = state_machine
        self.permissions = permissions or PermissionTable()
        self.shutdown_timeout_ms = (
            shutdown_timeout_ms if shutdown_timeout_ms is not None else settings.shutdown_timeout_ms
        )
        self._stopped = True
        self._promoter = Promoter(self, interval_seconds=promote_interval)
        self._promoter_task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._listeners: list[MethodListener] = []
        self._metrics = get_metrics()

        sm = state_machine
        self._methods: dict[str, Callable[..., Awaitable[Any]]] = {
            METHOD_START_SERVER: self.start_server,
            METHOD_SHUTDOWN_SERVER: self.shutdown_server,
            METHOD_GET_JOB: sm.get_job,
            METHOD_GET_WORK: self.get_work,
            METHOD_JOB_SAVE: sm.save,
            METHOD_JOB_REMOVE: sm.job_remove,
            METHOD_JOB_PAUSE: sm.job_pause,
            METHOD_JOB_RESUME: sm.job_resume,
            METHOD_JOB_READY: sm.job_ready,
            METHOD_JOB_CANCEL: sm.job_cancel,
            METHOD_JOB_RESTART: sm.job_restart,
            METHOD_JOB_RERUN: sm.job_rerun,
            METHOD_JOB_LOG: sm.job_log,
            METHOD_JOB_PROGRESS: sm.job_progress,
            METHOD_JOB_DONE: sm.job_done,
            METHOD_JOB_FAIL: sm.job_fail,
        }

    @property
    def stopped(self) -> bool:
        """True until started and again once a shutdown has begun."""
        return self._stopped

    @property
    def methods(self) -> list[str]:
        """Names of every operation on the surface."""
        return list(self._methods)

    def allow(self, **rules: Any) -> "JobServer":
        """Register allow rules; see `PermissionTable.allow`."""
        self.permissions.allow(**rules)
        return self

    def deny(self, **rules: Any) -> "JobServer":
        """Register deny rules; see `PermissionTable.deny`."""
        self.permissions.deny(**rules)
        return self

    def add_listener(self, listener: MethodListener) -> None:
        """Receive a `MethodEvent` for every invoked operation."""
        self._listeners.append(listener)

    def remove_listener(self, listener: MethodListener) -> None:
        """Stop sending events to a listener."""
        self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_server(self) -> bool:
        """
        Start handing out work and running the promotion sweeper.

        A shutdown still inside its grace period is called off.
        """
        if self._shutdown_task is not None and not self._shutdown_task.done():
            self._shutdown_task.cancel()
            logger.info("Pending job server shutdown cancelled")
        self._shutdown_task = None
        self._stopped = False
        if self._promoter_task is None or self._promoter_task.done():
            self._promoter_task = self._promoter.spawn()
        logger.info("Job server started")
        return True

    async def shutdown_server(self, timeout: int | None = None) -> bool:
        """
        Stop handing out work; after `timeout` ms fail every job still
        running and stop the sweeper.

        Args:
            timeout: Grace period in milliseconds for running jobs to finish.

        Returns:
            True once the shutdown is scheduled.
        """
        timeout = self.shutdown_timeout_ms if timeout is None else timeout
        self._stopped = True
        if self._shutdown_task is not None and not self._shutdown_task.done():
            self._shutdown_task.cancel()
        self._shutdown_task = asyncio.create_task(self._hard_shutdown(timeout))
        logger.info("Job server shutting down", extra={"timeout_ms": timeout})
        return True

    async def _hard_shutdown(self, timeout: int) -> None:
        await asyncio.sleep(timeout / 1000)
        failed = 0
        for job_id, run_id in await self.state_machine.running_runs():
            if await self.state_machine.job_fail(job_id, run_id, {"value": MSG_SERVER_SHUTDOWN}):
                failed += 1
        await self._stop_promoter()
        logger.warning("Job server shutdown complete", extra={"failed_running_jobs": failed})

    async def wait_shutdown(self) -> None:
        """Wait for a scheduled shutdown to complete."""
        if self._shutdown_task is not None:
            await self._shutdown_task

    async def close(self) -> None:
        """Stop the sweeper and drop any pending shutdown without touching jobs."""
        self._stopped = True
        if self._shutdown_task is not None and not self._shutdown_task.done():
            self._shutdown_task.cancel()
            try:
                await self._shutdown_task
            except asyncio.CancelledError:
                pass
        self._shutdown_task = None
        await self._stop_promoter()

    async def _stop_promoter(self) -> None:
        await self._promoter.stop()
        if self._promoter_task is not None:
            await self._promoter_task
            self._promoter_task = None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get_work(
        self,
        types: str | list[str],
        max_jobs: int = 1,
        work_timeout: int | None = None,
    ) -> list[JobDocument]:
        """Claim ready jobs; nothing while the server is stopped."""
        if self._stopped:
            logger.debug("getWork while job server is stopped", extra={"types": types})
            return []
        return await self.state_machine.get_work(types, max_jobs=max_jobs, work_timeout=work_timeout)

    async def invoke(
        self,
        method: str,
        args: Sequence[Any] = (),
        kwargs: dict[str, Any] | None = None,
        caller_id: str | None = None,
        trusted: bool = False,
    ) -> Any:
        """
        Invoke an operation by name.

        Args:
            method: Operation name, e.g. "jobSave".
            args: Positional arguments.
            kwargs: Keyword arguments.
            caller_id: Identity of a remote caller.
            trusted: In-process call; skips the permission check.

        Returns:
            The operation's result.

        Raises:
            UnknownMethodError: If the name is not an operation.
            PermissionDeniedError: If an untrusted caller is not allowed.
        """
        kwargs = kwargs or {}
        params = list(args)
        handler = self._methods.get(method)
        if handler is None:
            raise UnknownMethodError(method)

        # Rules see keyword options as a trailing dict, after the positional arguments
        rule_params = [*params, kwargs] if kwargs else params
        if not trusted and not self.permissions.allowed(caller_id, method, rule_params):
            error = PermissionDeniedError(method, caller_id)
            self._metrics.record_method_call(method, "denied", 0.0)
            self._emit(MethodEvent.failure(method, caller_id, trusted, params, kwargs, error))
            raise error

        start = time.perf_counter()
        with get_tracer().start_as_current_span(SPAN_INVOKE_METHOD) as span:
            span.set_attribute("jobqueue.method", method)
            if caller_id:
                span.set_attribute("jobqueue.caller_id", caller_id)
            try:
                result = await handler(*params, **kwargs)
            except Exception as e:
                span.record_exception(e)
                self._metrics.record_method_call(method, "error", time.perf_counter() - start)
                self._emit(MethodEvent.failure(method, caller_id, trusted, params, kwargs, e))
                raise

        self._metrics.record_method_call(method, "ok", time.perf_counter() - start)
        self._emit(MethodEvent.call(method, caller_id, trusted, params, kwargs, result))
        return result

    def _emit(self, event: MethodEvent) -> None:
        if event.error is not None:
            logger.warning(
                f"{event.method} failed",
                extra={"caller": event.caller, "error": event.error},
            )
        else:
            logger.debug(f"{event.method} called", extra={"caller": event.caller})
        for listener in list(self._listeners):
            # Listener errors never reach the caller
            try:
                listener(event)
            except Exception as e:
                logger.exception(
                    f"Method listener failed: {e}",
                    extra={"method": event.method, "listener": repr(listener)},
                )
