"""
Job registry initialization.

Registers all job handlers with the job registry.
"""

from relay.config.logging import get_logger
from relay.v1.core.registries import JobRegistry
from relay.v1.infra.jobs.handlers import NotifyHandler
from relay.v1.infra.jobs.repository import JobRepository
from relay.v1.notifications.repository import NotificationRepository
from relay.v1.notifications.service import NOTIFY_JOB

logger = get_logger(__name__)


def register_job_handlers(
    registry: JobRegistry,
    notifications: NotificationRepository,
    jobs: JobRepository,
) -> None:
    """Register all job handlers with the job registry."""

    registry.register(NOTIFY_JOB, NotifyHandler(notifications, jobs))

    logger.info("Job handlers registered", registered_handlers=registry.names())
