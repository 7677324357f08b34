"""
WebSocket endpoint: session tracking, token handshake and notifications.
"""

import json
import uuid
from typing import Any

from fastapi import APIRouter, WebSocket
from pydantic import ValidationError

from relay.config.logging import get_logger
from relay.infra.broker import RedisBroker
from relay.v1.core.security import AccessControl, SessionTokenCodec
from relay.v1.notifications.fanout import NotificationFanout
from relay.v1.notifications.repository import NotificationRepository
from relay.v1.notifications.schemas import NotificationRequest
from relay.v1.notifications.service import NotificationService
from relay.v1.realtime.sessions import Session, SessionRegistry, TransportType
from relay.v1.realtime.transports import WebSocketTransport

logger = get_logger(__name__)
router = APIRouter()


class RealtimeServer:
    """
    Owns live sessions and their transports.

    Sessions are only mutated from this server's own connection callbacks.
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        transports: dict[TransportType, WebSocketTransport],
        fanout: NotificationFanout,
        notifications: NotificationRepository,
        notification_service: NotificationService,
        token_codec: SessionTokenCodec,
        access_control: AccessControl,
    ):
        self.sessions = sessions
        self.transports = transports
        self.fanout = fanout
        self.notifications = notifications
        self.notification_service = notification_service
        self.token_codec = token_codec
        self.access_control = access_control

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one connection until the client disconnects."""
        await websocket.accept()
        session = self.connect(websocket)

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break

                raw = frame.get("text")
                if raw is None:
                    logger.warning("Binary frame ignored", socket_id=session.socket_id)
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Malformed message", socket_id=session.socket_id)
                    continue
                await self.dispatch(session, message)
        finally:
            self.disconnect(session.socket_id)

    def connect(self, websocket: WebSocket) -> Session:
        transport_type = (
            TransportType.ENCRYPTED
            if websocket.url.scheme == "wss"
            else TransportType.PLAIN
        )
        session = Session(socket_id=uuid.uuid4().hex, transport=transport_type)
        self.sessions.add(session)
        self.transports[transport_type].connect(session.socket_id, websocket)
        logger.info(
            "WebSocket connected",
            socket_id=session.socket_id,
            transport=transport_type.value,
        )
        return session

    def disconnect(self, socket_id: str) -> None:
        session = self.sessions.remove(socket_id)
        if session is None:
            return
        self.transports[session.transport].disconnect(socket_id)
        logger.info("WebSocket disconnected", socket_id=socket_id)

    async def dispatch(self, session: Session, message: Any) -> None:
        """Route a ``{"event": ..., "data": ...}`` envelope to its handler."""
        if not isinstance(message, dict):
            logger.warning("Malformed message", socket_id=session.socket_id)
            return

        event = message.get("event")
        data = message.get("data")
        if event == "token":
            self.on_token(session, data)
        elif event == "notification":
            await self.on_notification(session, data)
        else:
            logger.debug("Unknown event", socket_id=session.socket_id, event_name=event)

    def on_token(self, session: Session, token: Any) -> None:
        if not isinstance(token, str):
            return

        principal = self.token_codec.decode(token)
        if principal is None:
            logger.warning("Invalid session token", socket_id=session.socket_id)
            return

        self.sessions.attach_user(session.socket_id, principal)
        logger.info(
            "WebSocket authenticated",
            socket_id=session.socket_id,
            user_id=principal.user_id,
        )

    async def on_notification(self, session: Session, data: Any) -> None:
        if session.user is None:
            return  # anonymous

        if not self.access_control.is_allowed(session.user, "notification", "create"):
            logger.warning(
                "Notification denied",
                socket_id=session.socket_id,
                user_id=session.user.user_id,
            )
            return

        try:
            request = NotificationRequest.model_validate(data)
            notification = request.to_notification()
        except ValidationError as e:
            logger.info(
                "Rejected notification",
                socket_id=session.socket_id,
                errors=e.errors(include_url=False),
            )
            return

        try:
            await self.notification_service.submit(
                notification, scheduled_for=request.delivery_time()
            )
        except Exception:
            logger.exception("Incoming notification failed", socket_id=session.socket_id)

    async def listen(self, broker: RedisBroker) -> None:
        """Fan out notifications announced on pub/sub until cancelled."""
        await broker.listen([self.notifications.channel], self.on_announcement)

    async def on_announcement(self, channel: str, notification_id: str) -> None:
        notification = await self.notifications.find(notification_id)
        if notification is None:
            logger.warning("Announced notification not found", notification_id=notification_id)
            return
        await self.fanout.deliver(notification)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Realtime channel for notifications."""
    server: RealtimeServer = websocket.app.state.realtime
    await server.handle(websocket)
