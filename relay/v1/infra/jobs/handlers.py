"""
Job handlers for background processing.

Handlers implement the JobHandler protocol and are registered in the job
registry under the job name they serve.
"""

from relay.config.logging import get_logger
from relay.v1.infra.jobs.models import Job
from relay.v1.infra.jobs.repository import JobRepository
from relay.v1.notifications.models import Notification
from relay.v1.notifications.repository import NotificationRepository

logger = get_logger(__name__)


class NotifyHandler:
    """
    Delivers a scheduled notification.

    Input data is the notification itself:
    {
        "text": "Backup finished",
        "title": "optional",
        "icon": "optional css class",
        "variables": {},
        "user_id": 42,      # or
        "role_id": 7        # or neither for a broadcast
    }
    """

    def __init__(self, notifications: NotificationRepository, jobs: JobRepository):
        self.notifications = notifications
        self.jobs = jobs

    async def handle(self, job: Job) -> None:
        notification = Notification.model_validate(job.input_data)
        notification_id = await self.notifications.save(notification)

        job.mark_succeeded()
        await self.jobs.save(job)

        logger.info(
            "Scheduled notification sent",
            job_id=job.id,
            notification_id=notification_id,
        )
