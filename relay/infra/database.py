from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import AsyncGenerator, TypeVar

from fastapi import Depends
from sqlalchemy import DateTime
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from relay.config.logging import get_logger
from relay.config.settings import Settings, get_settings
from relay.v1.core.exceptions import TransactionConflictError

logger = get_logger(__name__)

T = TypeVar("T")

SERIALIZATION_FAILURE = "40001"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp stored and returned in UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Database:
    """Database connection and session management."""

    def __init__(self, settings: Settings):
        self.settings = settings
        engine_options = {"echo": settings.debug and settings.log_level == "DEBUG"}
        if not settings.database_url.startswith("sqlite"):
            engine_options.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
            )
        self.engine = create_async_engine(settings.database_url, **engine_options)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """Acquire a session for one operation and always release it."""
        async with self.SessionLocal() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create all tables known to the metadata."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


def is_serialization_failure(error: DBAPIError) -> bool:
    """Check whether a driver error is a transaction serialization conflict."""
    orig = error.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code == SERIALIZATION_FAILURE


async def run_in_transaction(
    database: Database,
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    retries: int | None = None,
    isolation_level: str = "SERIALIZABLE",
) -> T:
    """
    Run an operation inside one transaction, retrying serialization conflicts.

    The operation receives the session and must not commit; the transaction is
    committed here when it returns. Conflicts roll the transaction back and the
    whole operation is replayed, up to ``retries`` attempts in total.
    """
    attempts = retries or database.settings.db_transaction_retries
    last_error: DBAPIError | None = None

    for attempt in range(1, attempts + 1):
        async with database.SessionLocal() as session:
            try:
                await session.connection(
                    execution_options={"isolation_level": isolation_level}
                )
                result = await operation(session)
                await session.commit()
                return result
            except DBAPIError as e:
                await session.rollback()
                if not is_serialization_failure(e):
                    raise
                logger.warning(
                    "Transaction conflict, retrying",
                    attempt=attempt,
                    max_attempts=attempts,
                )
                last_error = e

    raise TransactionConflictError(
        "Transaction failed after repeated serialization conflicts",
        details={"attempts": attempts},
    ) from last_error


# Global database instance
_database: Database | None = None


def get_database(settings: Settings = Depends(get_settings)) -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        _database = Database(settings)
    return _database


async def get_session(
    database: Database = Depends(get_database),
) -> AsyncGenerator[AsyncSession, None]:
    """Dependency injection for database sessions."""
    async with database.session_scope() as session:
        yield session

