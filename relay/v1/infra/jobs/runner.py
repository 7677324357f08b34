"""
Executes started jobs through their registered handlers.
"""

from relay.config.logging import get_logger
from relay.v1.core.registries import JobRegistry
from relay.v1.infra.jobs.models import Job
from relay.v1.infra.jobs.repository import JobRepository

logger = get_logger(__name__)


class JobRunner:
    """Resolve a job's handler by name, run it and record failures."""

    def __init__(self, registry: JobRegistry, repository: JobRepository):
        self.registry = registry
        self.repository = repository

    async def run(self, job: Job) -> bool:
        """
        Run a started job.

        Returns True when the handler completed. Handler errors and unknown
        job names are stored on the job as a failure instead of propagating.
        """
        job_logger = logger.bind(job_id=job.id, job_name=job.name)

        try:
            handler = self.registry.get(job.name)
        except KeyError as e:
            job_logger.error("No handler registered for job")
            await self._record_failure(job, "HandlerNotFound", str(e).strip("'\""))
            return False

        try:
            job_logger.info("Processing job started")
            await handler.handle(job)
        except Exception as e:
            job_logger.exception("Processing job failed", error=str(e))
            await self._record_failure(job, e.__class__.__name__, str(e))
            return False

        job_logger.info("Processing job completed", status=job.status)
        return True

    async def _record_failure(self, job: Job, error_type: str, message: str) -> None:
        job.mark_failed(error_type, message)
        try:
            await self.repository.save(job)
        except Exception:
            logger.exception("Failed to store job failure", job_id=job.id)
