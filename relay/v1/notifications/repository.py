"""
Redis-backed storage for transient notifications.
"""

import json
import uuid

from relay.config.logging import get_logger
from relay.config.settings import Settings
from relay.infra.broker import RedisBroker
from relay.v1.notifications.models import Notification

logger = get_logger(__name__)


class NotificationRepository:
    """Stores notifications as expiring hashes and announces them."""

    def __init__(self, settings: Settings, broker: RedisBroker):
        self.ttl_seconds = settings.notification_ttl_s
        self.broker = broker

    @property
    def channel(self) -> str:
        """Channel announcing stored notification IDs."""
        return self.broker.channel("notifications")

    def key(self, notification_id: str) -> str:
        return self.broker.channel(f"notification:{notification_id}")

    async def save(self, notification: Notification) -> str:
        """Store the notification and publish its ID for fan-out."""
        notification_id = notification.id or uuid.uuid4().hex
        notification.id = notification_id

        fields = {
            "id": notification_id,
            "text": notification.text,
            "variables": json.dumps(notification.variables),
        }
        for name in ("title", "icon", "user_id", "role_id"):
            value = getattr(notification, name)
            if value is not None:
                fields[name] = str(value)

        client = self.broker.client
        key = self.key(notification_id)
        await client.hset(key, mapping=fields)
        await client.expire(key, self.ttl_seconds)
        await self.broker.publish(self.channel, notification_id)

        logger.info(
            "Notification saved",
            notification_id=notification_id,
            user_id=notification.user_id,
            role_id=notification.role_id,
        )
        return notification_id

    async def find(self, notification_id: str) -> Notification | None:
        """Load a stored notification; None once it has expired."""
        data = await self.broker.client.hgetall(self.key(notification_id))
        if not data:
            return None

        data = {_as_text(k): _as_text(v) for k, v in data.items()}
        variables = json.loads(data["variables"]) if data.get("variables") else {}

        return Notification(
            id=data.get("id", notification_id),
            text=data["text"],
            title=data.get("title"),
            icon=data.get("icon"),
            variables=variables,
            user_id=int(data["user_id"]) if data.get("user_id") else None,
            role_id=int(data["role_id"]) if data.get("role_id") else None,
        )


def _as_text(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value
