"""
Entry point for producers of notifications.
"""

from datetime import UTC, datetime, timedelta

from relay.config.logging import get_logger
from relay.config.settings import Settings
from relay.v1.infra.jobs.models import Job
from relay.v1.infra.jobs.repository import JobRepository
from relay.v1.notifications.models import Notification
from relay.v1.notifications.repository import NotificationRepository

logger = get_logger(__name__)

NOTIFY_JOB = "notify"


class NotificationService:
    """Send notifications now, or schedule them as ``notify`` jobs."""

    def __init__(
        self,
        settings: Settings,
        notifications: NotificationRepository,
        jobs: JobRepository,
    ):
        self.window = timedelta(seconds=settings.notification_schedule_window_s)
        self.notifications = notifications
        self.jobs = jobs

    async def submit(
        self, notification: Notification, scheduled_for: datetime | None = None
    ) -> str | int | None:
        """
        Deliver a notification.

        Returns the notification ID for immediate delivery, or the job ID when
        ``scheduled_for`` lies in the future.
        """
        if scheduled_for is None or scheduled_for <= datetime.now(UTC):
            return await self.notifications.save(notification)

        job = Job.create(
            NOTIFY_JOB,
            input_data=notification.model_dump(exclude={"id"}),
            scheduled_for=scheduled_for,
            valid_until=scheduled_for + self.window,
        )
        job_id = await self.jobs.save(job)

        logger.info(
            "Notification scheduled",
            job_id=job_id,
            scheduled_for=scheduled_for.isoformat(),
        )
        return job_id
