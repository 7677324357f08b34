"""
Background job system: Postgres job store, handler runner and polling worker.
"""

from relay.v1.infra.jobs.models import Job, JobStatus
from relay.v1.infra.jobs.repository import JobRepository, ProcessedJobs
from relay.v1.infra.jobs.runner import JobRunner
from relay.v1.infra.jobs.worker import JobWorker

__all__ = [
    "Job",
    "JobStatus",
    "JobRepository",
    "ProcessedJobs",
    "JobRunner",
    "JobWorker",
]
