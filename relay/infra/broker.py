"""
Redis pub/sub broker used for job wake-ups and notification announcements.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from relay.config.logging import get_logger
from relay.config.settings import Settings

logger = get_logger(__name__)

MessageHandler = Callable[[str, str], Awaitable[None]]


class RedisBroker:
    """
    Thin wrapper around a Redis client.

    Features:
    - Project-prefixed channel and key names
    - Fire-and-forget publishing
    - Long-running subscriptions dispatching to async callbacks
    """

    def __init__(self, settings: Settings, client: redis.Redis | None = None):
        self.settings = settings
        self.client = client or redis.from_url(
            settings.redis_url, decode_responses=True
        )

    def channel(self, name: str) -> str:
        """Return the project-scoped name of a channel or key."""
        return self.settings.channel(name)

    async def publish(self, channel: str, message: str | int) -> int:
        """Publish a message, returning the number of receivers."""
        receivers = await self.client.publish(channel, str(message))
        logger.debug("Published message", channel=channel, receivers=receivers)
        return receivers

    async def ping(self) -> bool:
        """Check connectivity to Redis."""
        return bool(await self.client.ping())

    async def listen(self, channels: Iterable[str], handler: MessageHandler) -> None:
        """
        Subscribe to channels and dispatch each message until cancelled.

        Handler errors are logged and do not end the subscription. A lost
        connection is logged and the channels are resubscribed after
        ``redis_reconnect_delay_s``.
        """
        channels = list(channels)
        delay = self.settings.redis_reconnect_delay_s

        while True:
            try:
                await self._consume(channels, handler)
                logger.warning("Subscription ended, resubscribing", channels=channels)
            except (RedisConnectionError, RedisTimeoutError):
                logger.exception(
                    "Lost pub/sub connection, resubscribing",
                    channels=channels,
                    retry_in_s=delay,
                )
            await asyncio.sleep(delay)

    async def _consume(self, channels: list[str], handler: MessageHandler) -> None:
        pubsub = self.client.pubsub()
        try:
            await pubsub.subscribe(*channels)
            logger.info("Subscribed to channels", channels=channels)

            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue

                channel = _as_text(message["channel"])
                data = _as_text(message["data"])
                try:
                    await handler(channel, data)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(
                        "Error handling pub/sub message", channel=channel
                    )
        finally:
            try:
                await pubsub.unsubscribe(*channels)
            except (RedisConnectionError, RedisTimeoutError):
                logger.debug("Unsubscribe skipped on lost connection", channels=channels)
            await pubsub.aclose()
            logger.info("Unsubscribed from channels", channels=channels)

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()


def _as_text(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)
