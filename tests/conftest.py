import asyncio
import os
from collections.abc import AsyncGenerator
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from relay.config.settings import Settings
from relay.infra.database import Base, Database
from relay.v1.infra.jobs.repository import JobRepository

# Import models to ensure they're registered
from relay.v1.infra.jobs import models as job_models  # noqa: F401
from relay.v1.users import models as user_models  # noqa: F401


class InMemoryRedis:
    """Just enough of the Redis hash API for notification storage."""

    def __init__(self):
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def ping(self):
        return True


class RecordingBroker:
    """In-process broker recording every publish and delivering to listeners."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.client = InMemoryRedis()
        self.published: list[tuple[str, str]] = []
        self.subscriptions: dict[str, list] = {}

    def channel(self, name: str) -> str:
        return self.settings.channel(name)

    async def publish(self, channel, message) -> int:
        self.published.append((channel, str(message)))
        handlers = list(self.subscriptions.get(channel, []))
        for handler in handlers:
            await handler(channel, str(message))
        return len(handlers)

    async def listen(self, channels, handler) -> None:
        channels = list(channels)
        for channel in channels:
            self.subscriptions.setdefault(channel, []).append(handler)
        try:
            await asyncio.Event().wait()
        finally:
            for channel in channels:
                self.subscriptions[channel].remove(handler)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass

    def published_on(self, name: str) -> list[str]:
        channel = self.channel(name)
        return [message for ch, message in self.published if ch == channel]


def make_websocket(scheme: str = "ws"):
    """A stand-in for a connected WebSocket."""
    return SimpleNamespace(url=SimpleNamespace(scheme=scheme), send_json=AsyncMock())


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway database."""
    database_url = os.getenv("DATABASE_URL") or (
        f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}"
    )
    return Settings(
        debug=False,
        project="test",
        database_url=database_url,
        redis_url="redis://localhost:6399/0",
        redis_reconnect_delay_s=0.01,
        secret_key="test-secret-key",
        worker_enabled=False,
        realtime_enabled=False,
        job_poll_interval_s=60.0,
        job_shutdown_timeout_s=1.0,
    )


async def reset_schema(database: Database) -> None:
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
async def database(test_settings) -> AsyncGenerator[Database, None]:
    """Database with a fresh schema."""
    db = Database(test_settings)
    await reset_schema(db)
    yield db
    await db.close()


@pytest.fixture
def broker(test_settings) -> RecordingBroker:
    return RecordingBroker(test_settings)


@pytest.fixture
def job_repository(database, broker) -> JobRepository:
    return JobRepository(database, broker)
