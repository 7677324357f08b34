"""
Poll-based job worker woken early by Redis pub/sub.
"""

import asyncio

from relay.config.logging import get_logger
from relay.config.settings import Settings
from relay.infra.broker import RedisBroker
from relay.v1.infra.jobs.repository import JobRepository, ProcessedJobs, job_channels
from relay.v1.infra.jobs.runner import JobRunner

logger = get_logger(__name__)


class JobWorker:
    """
    Job worker driven by a fixed-interval timer.

    Features:
    - Recovers jobs interrupted by a previous process on start
    - Lifecycle announcements on pub/sub trigger an immediate pass
    - Started jobs run as background tasks, never blocking the poll loop
    """

    def __init__(
        self,
        settings: Settings,
        repository: JobRepository,
        runner: JobRunner,
        broker: RedisBroker,
    ):
        self.settings = settings
        self.repository = repository
        self.runner = runner
        self.broker = broker
        self.running = False
        self.active_jobs: set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()
        self._poll_task: asyncio.Task | None = None
        self._listener_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Recover interrupted jobs, subscribe, start the timer and run a pass."""
        if self.running:
            raise RuntimeError("Worker is already running")

        await self.repository.restart_interrupted()

        self.running = True
        self._listener_task = asyncio.create_task(
            self.broker.listen(job_channels(self.broker), self._on_message)
        )
        self._poll_task = asyncio.create_task(self._poll_loop())

        logger.info(
            "Job worker started",
            poll_interval_s=self.settings.job_poll_interval_s,
        )

        await self.work()

    async def stop(self) -> None:
        """Stop polling and wait a bounded time for running jobs."""
        if not self.running:
            return

        logger.info("Stopping job worker")
        self.running = False

        for task in (self._poll_task, self._listener_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Worker task had failed", task=task.get_name())
        self._poll_task = None
        self._listener_task = None

        if self.active_jobs:
            _, pending = await asyncio.wait(
                set(self.active_jobs), timeout=self.settings.job_shutdown_timeout_s
            )
            if pending:
                logger.warning(
                    "Worker stopped with active jobs", active_jobs=len(pending)
                )

    def wake(self) -> None:
        """Trigger a pass before the next timer tick."""
        self._wakeup.set()

    async def work(self) -> ProcessedJobs | None:
        """Run one polling pass; errors are logged and end the pass."""
        try:
            processed = await self.repository.process_new_jobs()
        except Exception:
            logger.exception("Error processing new jobs")
            return None

        for job in processed.expired:
            logger.info("Job expired", job_id=job.id, job_name=job.name)

        for job in processed.started:
            logger.info("Job started", job_id=job.id, job_name=job.name)
            task = asyncio.create_task(self.runner.run(job))
            self.active_jobs.add(task)
            task.add_done_callback(self.active_jobs.discard)

        return processed

    async def _poll_loop(self) -> None:
        interval = self.settings.job_poll_interval_s
        while self.running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=interval)
            except TimeoutError:
                pass
            self._wakeup.clear()
            await self.work()

    async def _on_message(self, channel: str, message: str) -> None:
        logger.debug("Job announcement received", channel=channel, job_id=message)
        self.wake()
