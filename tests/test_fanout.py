import pytest

from conftest import make_websocket
from relay.v1.core.security import Principal
from relay.v1.notifications.fanout import NOTIFICATION_EVENT, NotificationFanout
from relay.v1.notifications.models import Notification
from relay.v1.realtime.sessions import Session, SessionRegistry, TransportType
from relay.v1.realtime.transports import WebSocketTransport


class StaticRoleMembers:
    def __init__(self, members: dict[int, set[int]]):
        self.members = members
        self.lookups: list[int] = []

    async def find_user_ids(self, role_id: int) -> set[int]:
        self.lookups.append(role_id)
        return self.members.get(role_id, set())


class Harness:
    def __init__(self, role_members=None):
        self.sessions = SessionRegistry()
        self.transports = {t: WebSocketTransport(t) for t in TransportType}
        self.role_members = role_members or StaticRoleMembers({})
        self.fanout = NotificationFanout(
            self.sessions, self.transports, self.role_members
        )

    def connect(self, socket_id, user_id=None, transport=TransportType.PLAIN):
        websocket = make_websocket()
        user = Principal(user_id=user_id) if user_id is not None else None
        self.sessions.add(Session(socket_id=socket_id, transport=transport, user=user))
        self.transports[transport].connect(socket_id, websocket)
        return websocket


def sent_events(websocket) -> list[dict]:
    return [call.args[0] for call in websocket.send_json.await_args_list]


@pytest.fixture
def harness() -> Harness:
    return Harness(StaticRoleMembers({7: {1, 2}}))


async def test_user_notification_reaches_only_that_user(harness):
    alice_tab1 = harness.connect("a1", user_id=1)
    alice_tab2 = harness.connect("a2", user_id=1, transport=TransportType.ENCRYPTED)
    bob = harness.connect("b", user_id=2)
    anonymous = harness.connect("anon")

    delivered = await harness.fanout.deliver(Notification(text="hi", user_id=1))

    assert delivered == 2
    expected = {"event": NOTIFICATION_EVENT, "data": {"text": "hi", "variables": {}}}
    assert sent_events(alice_tab1) == [expected]
    assert sent_events(alice_tab2) == [expected]
    assert sent_events(bob) == []
    assert sent_events(anonymous) == []


async def test_role_notification_reaches_members(harness):
    alice = harness.connect("a", user_id=1)
    bob = harness.connect("b", user_id=2)
    carol = harness.connect("c", user_id=3)
    anonymous = harness.connect("anon")

    delivered = await harness.fanout.deliver(Notification(text="ops", role_id=7))

    assert delivered == 2
    assert harness.role_members.lookups == [7]
    assert len(sent_events(alice)) == 1
    assert len(sent_events(bob)) == 1
    assert sent_events(carol) == []
    assert sent_events(anonymous) == []


async def test_role_without_connected_members(harness):
    harness.connect("c", user_id=3)

    assert await harness.fanout.deliver(Notification(text="ops", role_id=99)) == 0


async def test_broadcast_reaches_every_session_once(harness):
    sockets = [
        harness.connect("a", user_id=1),
        harness.connect("anon"),
        harness.connect("enc", user_id=5, transport=TransportType.ENCRYPTED),
    ]

    delivered = await harness.fanout.deliver(Notification(text="maintenance"))

    assert delivered == 3
    for websocket in sockets:
        assert len(sent_events(websocket)) == 1


async def test_failed_socket_does_not_stop_delivery(harness):
    broken = harness.connect("broken", user_id=1)
    broken.send_json.side_effect = RuntimeError("connection closed")
    healthy = harness.connect("healthy", user_id=1)

    delivered = await harness.fanout.deliver(Notification(text="hi", user_id=1))

    assert delivered == 1
    assert len(sent_events(healthy)) == 1


async def test_unknown_user_gets_nothing(harness):
    harness.connect("a", user_id=1)

    assert await harness.fanout.deliver(Notification(text="hi", user_id=404)) == 0
