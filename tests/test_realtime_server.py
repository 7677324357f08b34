import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import make_websocket
from relay.main import create_app
from relay.v1.core.security import AccessControl, Principal, SessionTokenCodec
from relay.v1.notifications.fanout import NotificationFanout
from relay.v1.notifications.models import Notification
from relay.v1.notifications.repository import NotificationRepository
from relay.v1.realtime.server import RealtimeServer
from relay.v1.realtime.sessions import SessionRegistry, TransportType
from relay.v1.realtime.transports import WebSocketTransport


@pytest.fixture
def codec(test_settings) -> SessionTokenCodec:
    return SessionTokenCodec(test_settings)


@pytest.fixture
def server(test_settings, broker, codec) -> RealtimeServer:
    sessions = SessionRegistry()
    transports = {t: WebSocketTransport(t) for t in TransportType}
    role_members = AsyncMock()
    role_members.find_user_ids.return_value = set()
    return RealtimeServer(
        sessions=sessions,
        transports=transports,
        fanout=NotificationFanout(sessions, transports, role_members),
        notifications=NotificationRepository(test_settings, broker),
        notification_service=AsyncMock(),
        token_codec=codec,
        access_control=AccessControl(test_settings),
    )


def admin_token(codec: SessionTokenCodec, user_id: int = 1) -> str:
    return codec.encode(Principal(user_id=user_id, roles=["admin"]))


class TestConnections:
    def test_transport_follows_url_scheme(self, server):
        plain = server.connect(make_websocket("ws"))
        encrypted = server.connect(make_websocket("wss"))

        assert plain.transport == TransportType.PLAIN
        assert encrypted.transport == TransportType.ENCRYPTED
        assert len(server.transports[TransportType.ENCRYPTED]) == 1

    def test_disconnect_removes_session(self, server):
        session = server.connect(make_websocket())
        server.disconnect(session.socket_id)

        assert len(server.sessions) == 0
        assert len(server.transports[TransportType.PLAIN]) == 0
        # Unknown sockets are ignored
        server.disconnect(session.socket_id)


class TestDispatch:
    async def test_token_attaches_user(self, server, codec):
        session = server.connect(make_websocket())

        await server.dispatch(session, {"event": "token", "data": admin_token(codec, 5)})

        assert session.user_id == 5

    async def test_invalid_token_leaves_session_anonymous(self, server):
        session = server.connect(make_websocket())

        await server.dispatch(session, {"event": "token", "data": "forged"})
        await server.dispatch(session, {"event": "token", "data": 12})

        assert session.user is None

    async def test_anonymous_notification_is_ignored(self, server):
        session = server.connect(make_websocket())

        await server.dispatch(
            session, {"event": "notification", "data": {"text": "hi", "variables": {}}}
        )

        server.notification_service.submit.assert_not_awaited()

    async def test_notification_requires_sender_role(self, server, codec):
        session = server.connect(make_websocket())
        server.on_token(session, codec.encode(Principal(user_id=2, roles=["viewer"])))

        await server.dispatch(
            session, {"event": "notification", "data": {"text": "hi", "variables": {}}}
        )

        server.notification_service.submit.assert_not_awaited()

    async def test_notification_is_submitted(self, server, codec):
        session = server.connect(make_websocket())
        server.on_token(session, admin_token(codec))

        await server.dispatch(
            session,
            {
                "event": "notification",
                "data": {
                    "text": "Deploy done",
                    "variables": {"env": "prod"},
                    "user_id": "",
                    "role_id": 7,
                    "scheduled_for": 1_700_000_000,
                },
            },
        )

        server.notification_service.submit.assert_awaited_once_with(
            Notification(text="Deploy done", variables={"env": "prod"}, role_id=7),
            scheduled_for=datetime.fromtimestamp(1_700_000_000, UTC),
        )

    async def test_invalid_notification_is_dropped(self, server, codec):
        session = server.connect(make_websocket())
        server.on_token(session, admin_token(codec))

        await server.dispatch(session, {"event": "notification", "data": {"title": "x"}})

        server.notification_service.submit.assert_not_awaited()

    async def test_submit_errors_are_contained(self, server, codec):
        session = server.connect(make_websocket())
        server.on_token(session, admin_token(codec))
        server.notification_service.submit.side_effect = ConnectionError("redis down")

        await server.dispatch(
            session, {"event": "notification", "data": {"text": "hi", "variables": {}}}
        )

    async def test_malformed_envelopes_are_ignored(self, server):
        session = server.connect(make_websocket())

        await server.dispatch(session, ["not", "an", "object"])
        await server.dispatch(session, {"event": "unknown"})

        server.notification_service.submit.assert_not_awaited()


class TestAnnouncements:
    async def test_announced_notification_is_fanned_out(self, server, codec):
        websocket = make_websocket()
        session = server.connect(websocket)
        server.on_token(session, admin_token(codec, 3))
        notification_id = await server.notifications.save(
            Notification(text="for you", user_id=3)
        )

        await server.on_announcement("test:notifications", notification_id)

        websocket.send_json.assert_awaited_once_with(
            {"event": "notification", "data": {"text": "for you", "variables": {}}}
        )

    async def test_expired_announcement_is_skipped(self, server):
        websocket = make_websocket()
        server.connect(websocket)

        await server.on_announcement("test:notifications", "gone")

        websocket.send_json.assert_not_awaited()

    async def test_listen_subscribes_to_notification_channel(self, server, broker):
        listener = asyncio.create_task(server.listen(broker))
        await asyncio.sleep(0)

        assert list(broker.subscriptions) == ["test:notifications"]

        listener.cancel()
        with pytest.raises(asyncio.CancelledError):
            await listener


class TestWebSocketEndpoint:
    @staticmethod
    def acknowledging_service(realtime: RealtimeServer) -> AsyncMock:
        """Service double that echoes each submission back to plain sockets."""

        async def acknowledge(notification, scheduled_for=None):
            await realtime.transports[TransportType.PLAIN].broadcast(
                "ack", {"text": notification.text}
            )

        service = AsyncMock()
        service.submit.side_effect = acknowledge
        return service

    def test_authenticated_client_can_send_notifications(self, test_settings, codec):
        app = create_app(test_settings)

        with TestClient(app) as client:
            realtime: RealtimeServer = app.state.realtime
            realtime.notification_service = self.acknowledging_service(realtime)

            with client.websocket_connect("/v1/ws") as ws:
                ws.send_json({"event": "token", "data": admin_token(codec)})
                ws.send_text("{not json")
                ws.send_json(
                    {"event": "notification", "data": {"text": "hi", "variables": {}}}
                )

                assert ws.receive_json() == {"event": "ack", "data": {"text": "hi"}}

            realtime.notification_service.submit.assert_awaited_once()
            assert len(realtime.sessions) == 0

    def test_anonymous_client_cannot_send_notifications(self, test_settings, codec):
        app = create_app(test_settings)

        with TestClient(app) as client:
            realtime: RealtimeServer = app.state.realtime
            realtime.notification_service = self.acknowledging_service(realtime)

            with client.websocket_connect("/v1/ws") as ws:
                ws.send_json(
                    {"event": "notification", "data": {"text": "first", "variables": {}}}
                )
                ws.send_json({"event": "token", "data": admin_token(codec)})
                ws.send_json(
                    {"event": "notification", "data": {"text": "second", "variables": {}}}
                )

                # Messages are handled in order, so the first one was dropped
                assert ws.receive_json() == {"event": "ack", "data": {"text": "second"}}

            realtime.notification_service.submit.assert_awaited_once()

    def test_unknown_events_and_binary_frames_keep_connection_open(
        self, test_settings, codec
    ):
        app = create_app(test_settings)

        with TestClient(app) as client:
            realtime: RealtimeServer = app.state.realtime
            realtime.notification_service = self.acknowledging_service(realtime)

            with client.websocket_connect("/v1/ws") as ws:
                ws.send_json({"event": "bogus"})
                ws.send_json({"data": 1})
                ws.send_bytes(b"\x00\x01")
                ws.send_json({"event": "token", "data": admin_token(codec)})
                ws.send_json(
                    {"event": "notification", "data": {"text": "alive", "variables": {}}}
                )

                assert ws.receive_json() == {"event": "ack", "data": {"text": "alive"}}

            realtime.notification_service.submit.assert_awaited_once()
            assert len(realtime.sessions) == 0
