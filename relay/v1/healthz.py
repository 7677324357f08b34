from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from relay.config.settings import Settings, SettingsDep
from relay.infra.broker import RedisBroker
from relay.infra.database import get_session
from relay.v1.core.exceptions import create_success_response
from relay.v1.infra.jobs.models import Job, JobStatus
from relay.v1.infra.jobs.worker import JobWorker

router = APIRouter()


class DependencyHealth(BaseModel):
    """Connectivity of a backing service."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker health status."""

    running: bool
    active_jobs: int = 0
    queue_depth: int = 0
    oldest_due_age_seconds: int | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    request: Request,
    settings: Settings = SettingsDep,
    session: AsyncSession = Depends(get_session),
):
    """Health check with database, Redis and worker status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    redis_health = await _check_redis_health(getattr(request.app.state, "broker", None))

    worker_health = None
    if db_health.connected:
        worker_health = await _check_worker_health(
            session, getattr(request.app.state, "worker", None)
        )

    health_data = {
        "ok": db_health.connected and redis_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "redis": redis_health.model_dump(),
        "worker": worker_health.model_dump() if worker_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DependencyHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
        return DependencyHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DependencyHealth(connected=False, error=str(e))


async def _check_redis_health(broker: RedisBroker | None) -> DependencyHealth:
    """Check Redis connectivity and response time."""
    if broker is None:
        return DependencyHealth(connected=False, error="Redis broker not configured")

    start_time = datetime.now(UTC)

    try:
        await broker.ping()

        response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
        return DependencyHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DependencyHealth(connected=False, error=str(e))


async def _check_worker_health(
    session: AsyncSession, worker: JobWorker | None
) -> WorkerHealth:
    """Check job worker state and queue status."""

    queue_depth_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status.in_([JobStatus.CREATED.value, JobStatus.STARTED.value])
        )
    )
    queue_depth = queue_depth_result.scalar() or 0

    # Oldest job that is due but not yet picked up
    now = datetime.now(UTC)
    oldest_due_result = await session.execute(
        select(func.min(Job.scheduled_for)).where(
            Job.status == JobStatus.CREATED.value, Job.scheduled_for <= now
        )
    )
    oldest_due = oldest_due_result.scalar()

    oldest_due_age_seconds = None
    if oldest_due:
        if oldest_due.tzinfo is None:
            oldest_due = oldest_due.replace(tzinfo=UTC)
        oldest_due_age_seconds = int((now - oldest_due).total_seconds())

    return WorkerHealth(
        running=bool(worker and worker.running),
        active_jobs=len(worker.active_jobs) if worker else 0,
        queue_depth=queue_depth,
        oldest_due_age_seconds=oldest_due_age_seconds,
    )
