from dataclasses import dataclass
from enum import Enum

from relay.v1.core.security import Principal


class TransportType(str, Enum):
    """WebSocket transport a session is connected through."""

    PLAIN = "plain"
    ENCRYPTED = "encrypted"


@dataclass
class Session:
    """A live WebSocket connection and its authenticated user, if any."""

    socket_id: str
    transport: TransportType
    user: Principal | None = None

    @property
    def user_id(self) -> int | None:
        return self.user.user_id if self.user else None


class SessionRegistry:
    """In-memory map of live sessions owned by the realtime server."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        self._sessions[session.socket_id] = session

    def remove(self, socket_id: str) -> Session | None:
        return self._sessions.pop(socket_id, None)

    def get(self, socket_id: str) -> Session | None:
        return self._sessions.get(socket_id)

    def attach_user(self, socket_id: str, user: Principal) -> Session | None:
        """Associate an authenticated user with a live session."""
        session = self._sessions.get(socket_id)
        if session is not None:
            session.user = user
        return session

    def find_by_user(self, user_id: int) -> list[Session]:
        """Sessions whose attached user has ``user_id``."""
        return [s for s in self._sessions.values() if s.user_id == user_id]

    def find_by_users(self, user_ids: set[int]) -> list[Session]:
        """Sessions whose attached user is one of ``user_ids``."""
        return [
            s
            for s in self._sessions.values()
            if s.user_id is not None and s.user_id in user_ids
        ]

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)
