"""
Delivery of notifications to live WebSocket sessions.
"""

from typing import Protocol

from relay.config.logging import get_logger
from relay.v1.notifications.models import Notification
from relay.v1.realtime.sessions import Session, SessionRegistry, TransportType
from relay.v1.realtime.transports import Transport

logger = get_logger(__name__)

NOTIFICATION_EVENT = "notification"


class RoleMembers(Protocol):
    """Resolves the users holding a role."""

    async def find_user_ids(self, role_id: int) -> set[int]:
        ...


class NotificationFanout:
    """Maps a notification to its recipient sessions and emits it."""

    def __init__(
        self,
        sessions: SessionRegistry,
        transports: dict[TransportType, Transport],
        role_members: RoleMembers,
    ):
        self.sessions = sessions
        self.transports = transports
        self.role_members = role_members

    async def deliver(self, notification: Notification) -> int:
        """
        Emit a notification to its targets.

        Returns the number of sockets the event was sent to. Delivery is best
        effort; sessions connected later never see it.
        """
        payload = notification.payload()

        if notification.user_id is not None:
            recipients = self.sessions.find_by_user(notification.user_id)
        elif notification.role_id is not None:
            member_ids = await self.role_members.find_user_ids(notification.role_id)
            recipients = self.sessions.find_by_users(member_ids)
        else:
            delivered = 0
            for transport in self.transports.values():
                delivered += await transport.broadcast(NOTIFICATION_EVENT, payload)
            logger.info(
                "Notification broadcast",
                notification_id=notification.id,
                delivered=delivered,
            )
            return delivered

        delivered = 0
        for session in recipients:
            if await self._emit(session, payload):
                delivered += 1

        logger.info(
            "Notification delivered",
            notification_id=notification.id,
            user_id=notification.user_id,
            role_id=notification.role_id,
            recipients=len(recipients),
            delivered=delivered,
        )
        return delivered

    async def _emit(self, session: Session, payload: dict) -> bool:
        transport = self.transports.get(session.transport)
        if transport is None:
            return False
        return await transport.emit(session.socket_id, NOTIFICATION_EVENT, payload)
