import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from relay.config.logging import get_logger, setup_logging
from relay.config.settings import Settings, get_settings
from relay.infra.broker import RedisBroker
from relay.infra.database import Database, get_database
from relay.v1.core.exceptions import (
    RelayException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    relay_exception_handler,
    validation_exception_handler,
)
from relay.v1.core.registries import job_registry
from relay.v1.core.security import AccessControl, SessionTokenCodec
from relay.v1.healthz import router as health_router
from relay.v1.infra.jobs.registry_init import register_job_handlers
from relay.v1.infra.jobs.repository import JobRepository
from relay.v1.infra.jobs.runner import JobRunner
from relay.v1.infra.jobs.worker import JobWorker
from relay.v1.notifications.fanout import NotificationFanout
from relay.v1.notifications.repository import NotificationRepository
from relay.v1.notifications.service import NotificationService
from relay.v1.realtime.server import RealtimeServer
from relay.v1.realtime.server import router as realtime_router
from relay.v1.realtime.sessions import SessionRegistry, TransportType
from relay.v1.realtime.transports import WebSocketTransport
from relay.v1.users.repository import RoleMembershipRepository

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire services on startup and release them on shutdown."""
    settings: Settings = app.state.settings

    database = Database(settings)
    await database.create_all()
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_database] = lambda: database
    broker = RedisBroker(settings)

    jobs = JobRepository(database, broker)
    notifications = NotificationRepository(settings, broker)
    notification_service = NotificationService(settings, notifications, jobs)

    if not job_registry.frozen:
        register_job_handlers(job_registry, notifications, jobs)
    if settings.environment != "development":
        job_registry.freeze()

    sessions = SessionRegistry()
    transports = {t: WebSocketTransport(t) for t in TransportType}
    fanout = NotificationFanout(sessions, transports, RoleMembershipRepository(database))
    realtime = RealtimeServer(
        sessions=sessions,
        transports=transports,
        fanout=fanout,
        notifications=notifications,
        notification_service=notification_service,
        token_codec=SessionTokenCodec(settings),
        access_control=AccessControl(settings),
    )

    app.state.database = database
    app.state.broker = broker
    app.state.realtime = realtime
    app.state.notification_service = notification_service
    app.state.worker = None

    listener: asyncio.Task | None = None
    if settings.realtime_enabled:
        listener = asyncio.create_task(realtime.listen(broker))

    if settings.worker_enabled:
        worker = JobWorker(settings, jobs, JobRunner(job_registry, jobs), broker)
        await worker.start()
        app.state.worker = worker

    logger.info("Relay started", environment=settings.environment)

    try:
        yield
    finally:
        if app.state.worker is not None:
            await app.state.worker.stop()
        if listener is not None:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Notification listener had failed")
        await broker.close()
        await database.close()
        logger.info("Relay stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    setup_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Background jobs and live notifications",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(RelayException, relay_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(realtime_router, prefix="/v1", tags=["realtime"])

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "relay.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
