"""
Promotion sweeper.

Runs periodically on behalf of a job server to:
1. Fail running jobs whose run deadline (`expires_after`) has passed,
   which is how runs abandoned by crashed workers are reclaimed
2. Promote every due, dependency-free waiting job to ready
"""

import asyncio
import logging
import signal
from typing import TYPE_CHECKING

from jobqueue.config import get_settings
from jobqueue.constants import MSG_WORK_TIMEOUT, SPAN_PROMOTE_JOBS
from jobqueue.db import close_db, init_db
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import get_tracer, setup_tracing

if TYPE_CHECKING:
    from jobqueue.server.dispatcher import JobServer

logger = logging.getLogger(__name__)


class Promoter:
    """
    Periodic sweeper owned by a job server.

    Rounds are skipped while the server is stopped.
    """

    def __init__(self, server: "JobServer", interval_seconds: float | None = None):
        """
        Initialize the sweeper.

        Args:
            server: The job server whose store is swept.
            interval_seconds: Seconds between rounds.
        """
        settings = get_settings()
        self.server = server
        self.interval = interval_seconds or settings.promote_interval_seconds
        self._running = False
        self._wakeup = asyncio.Event()
        self._metrics = get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run sweeper rounds until stopped."""
        self._running = True
        self._wakeup.clear()
        await self._loop()

    def spawn(self) -> asyncio.Task[None]:
        """Run sweeper rounds in a background task until stopped."""
        self._running = True
        self._wakeup.clear()
        return asyncio.create_task(self._loop())

    async def _loop(self) -> None:
        logger.info(f"Promoter starting with interval {self.interval}s")
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in promoter loop: {e}")

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Promoter stopped")

    async def stop(self) -> None:
        """Stop the sweeper after the current round."""
        logger.info("Promoter stopping")
        self._running = False
        self._wakeup.set()

    async def run_once(self) -> int:
        """
        Run one sweeper round.

        Returns:
            Number of expired runs failed.
        """
        if self.server.stopped:
            return 0

        state_machine = self.server.state_machine
        with get_tracer().start_as_current_span(SPAN_PROMOTE_JOBS) as span:
            expired = 0
            for job_id, run_id in await state_machine.expired_runs():
                if await state_machine.job_fail(job_id, run_id, {"value": MSG_WORK_TIMEOUT}):
                    expired += 1
            if expired:
                self._metrics.record_runs_expired(expired)
                logger.warning("Failed expired job runs", extra={"count": expired})
            span.set_attribute("jobqueue.runs_expired", expired)

            promoted = await state_machine.job_ready()
            span.set_attribute("jobqueue.promoted", promoted)

        return expired


async def run_async() -> None:
    """Run a standalone job server whose only activity is the sweeper."""
    from jobqueue.server.dispatcher import JobServer
    from jobqueue.server.state_machine import JobStateMachine

    settings = get_settings()
    setup_logging()
    if settings.otel_enabled:
        setup_tracing()
    session_factory = await init_db()

    server = JobServer(JobStateMachine(session_factory))
    await server.start_server()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        await server.close()
        await close_db()


def run() -> None:
    """Run the sweeper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
