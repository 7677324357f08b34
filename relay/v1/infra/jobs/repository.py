"""
Postgres-backed job store.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.config.logging import get_logger
from relay.infra.broker import RedisBroker
from relay.infra.database import Database
from relay.v1.infra.jobs.models import Job, JobStatus

logger = get_logger(__name__)

# Statuses announced on <project>:jobs:<status> after a save
ANNOUNCED_STATUSES = (
    JobStatus.CREATED.value,
    JobStatus.SUCCESS.value,
    JobStatus.FAILURE.value,
)


def job_channels(broker: RedisBroker) -> list[str]:
    """Channels that announce job lifecycle events."""
    return [broker.channel(f"jobs:{status}") for status in ANNOUNCED_STATUSES]


@dataclass
class ProcessedJobs:
    """Outcome of one polling pass."""

    started: list[Job] = field(default_factory=list)
    expired: list[Job] = field(default_factory=list)


class JobRepository:
    """Persistence and state transitions for jobs."""

    def __init__(self, database: Database, broker: RedisBroker):
        self.database = database
        self.broker = broker

    async def find(self, job_id: int) -> Job | None:
        """Get a job by ID."""
        async with self.database.session_scope() as session:
            return await session.get(Job, job_id)

    async def find_all(self) -> list[Job]:
        """Get all jobs ordered by ID."""
        async with self.database.session_scope() as session:
            result = await session.execute(select(Job).order_by(Job.id))
            return list(result.scalars().all())

    async def save(self, job: Job) -> int | None:
        """
        Insert a new job or update an existing one.

        Returns the job ID, or None when the job to update no longer exists.
        Jobs saved as created, success or failure are announced on their
        lifecycle channel.
        """
        async with self.database.session_scope() as session:
            if job.id is None:
                session.add(job)
                await session.commit()
                session.expunge(job)
                job_id = job.id
            else:
                result = await session.execute(
                    update(Job)
                    .where(Job.id == job.id)
                    .values(
                        name=job.name,
                        status=job.status,
                        created_at=job.created_at,
                        scheduled_for=job.scheduled_for,
                        valid_until=job.valid_until,
                        input_data=job.input_data,
                        output_data=job.output_data,
                    )
                )
                await session.commit()
                if result.rowcount == 0:
                    logger.warning("Job to update not found", job_id=job.id)
                    return None
                job_id = job.id

        logger.info("Job saved", job_id=job_id, job_name=job.name, status=job.status)

        if job.status in ANNOUNCED_STATUSES:
            await self.broker.publish(
                self.broker.channel(f"jobs:{job.status}"), job_id
            )

        return job_id

    async def delete(self, job: Job) -> int:
        """Delete a job, returning the number of removed rows."""
        if job.id is None:
            return 0

        async with self.database.session_scope() as session:
            result = await session.execute(delete(Job).where(Job.id == job.id))
            await session.commit()

        logger.info("Job deleted", job_id=job.id)
        job.id = None
        return result.rowcount

    async def delete_all(self) -> int:
        """Delete every job, returning the number of removed rows."""
        async with self.database.session_scope() as session:
            result = await session.execute(delete(Job))
            await session.commit()

        logger.info("All jobs deleted", deleted_count=result.rowcount)
        return result.rowcount

    async def restart_interrupted(self) -> int:
        """Return jobs left started by a previous process to the created state."""
        async with self.database.session_scope() as session:
            result = await session.execute(
                update(Job)
                .where(Job.status == JobStatus.STARTED.value)
                .values(status=JobStatus.CREATED.value)
            )
            await session.commit()

        if result.rowcount:
            logger.warning("Restarted interrupted jobs", job_count=result.rowcount)

        return result.rowcount

    async def process_new_jobs(self, now: datetime | None = None) -> ProcessedJobs:
        """
        Start due jobs and flag expired ones in one pass.

        Every transition is a conditional update on ``status = 'created'`` so
        overlapping passes never start the same job twice: only the pass whose
        update changed the row reports the job.
        """
        now = now or datetime.now(UTC)
        processed = ProcessedJobs()

        async with self.database.session_scope() as session:
            due_result = await session.execute(
                select(Job)
                .where(
                    and_(
                        Job.status == JobStatus.CREATED.value,
                        Job.scheduled_for <= now,
                        Job.valid_until >= now,
                    )
                )
                .order_by(Job.scheduled_for, Job.id)
            )
            due_jobs = list(due_result.scalars().all())

            expired_result = await session.execute(
                select(Job)
                .where(
                    and_(
                        Job.status == JobStatus.CREATED.value,
                        Job.valid_until < now,
                    )
                )
                .order_by(Job.id)
            )
            expired_jobs = list(expired_result.scalars().all())

            for job in due_jobs:
                if await self._transition(session, job.id, JobStatus.STARTED.value):
                    processed.started.append(job)

            for job in expired_jobs:
                if await self._transition(
                    session,
                    job.id,
                    JobStatus.FAILURE.value,
                    output_data=_expired_output(job, now),
                ):
                    processed.expired.append(job)

            await session.commit()
            session.expunge_all()

        for job in processed.started:
            job.status = JobStatus.STARTED.value
        for job in processed.expired:
            job.status = JobStatus.FAILURE.value
            job.output_data = _expired_output(job, now)

        if processed.started or processed.expired:
            logger.info(
                "Processed new jobs",
                started=[job.id for job in processed.started],
                expired=[job.id for job in processed.expired],
            )

        return processed

    async def _transition(
        self, session: AsyncSession, job_id: int, status: str, **values
    ) -> bool:
        """Move a created job to ``status``; False if another pass won."""
        result = await session.execute(
            update(Job)
            .where(and_(Job.id == job_id, Job.status == JobStatus.CREATED.value))
            .values(status=status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def _expired_output(job: Job, now: datetime) -> dict:
    return {
        "error": {
            "type": "JobExpired",
            "message": "Job was not started before valid_until",
            "valid_until": job.valid_until.isoformat(),
            "expired_at": now.isoformat(),
        }
    }
