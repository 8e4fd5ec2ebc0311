"""
In-process room registry for WebSocket connections.

Every connection sits in its personal room (user:<id>) and in any
conversation rooms (conversation:<id>) it was allowed to join.
"""
import logging
import uuid
from collections import defaultdict

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class Connection:
    def __init__(self, websocket: WebSocket, user_id: str) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.user_id = user_id
        self.rooms: set[str] = set()

    async def send(self, event: str, data: dict) -> None:
        await self.websocket.send_json({"event": event, "data": data})


class RoomManager:
    def __init__(self) -> None:
        self._rooms: dict[str, set[Connection]] = defaultdict(set)
        self._connections: set[Connection] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connect(self, conn: Connection) -> None:
        self._connections.add(conn)
        self.join(conn, user_room(conn.user_id))

    def join(self, conn: Connection, room: str) -> bool:
        """Add the connection to a room; False when it was already a member."""
        if room in conn.rooms:
            return False
        self._rooms[room].add(conn)
        conn.rooms.add(room)
        return True

    def leave(self, conn: Connection, room: str) -> bool:
        if room not in conn.rooms:
            return False
        conn.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn)
            if not members:
                del self._rooms[room]
        return True

    def disconnect(self, conn: Connection) -> list[str]:
        """Remove the connection everywhere; returns the rooms it left."""
        left = sorted(conn.rooms)
        for room in left:
            self.leave(conn, room)
        self._connections.discard(conn)
        return left

    def members(self, room: str) -> set[Connection]:
        return set(self._rooms.get(room, ()))

    def is_user_in_room(self, user_id: str, room: str) -> bool:
        return any(c.user_id == user_id for c in self._rooms.get(room, ()))

    async def emit(self, room: str, event: str, data: dict) -> int:
        """Send to every member of the room; returns how many sends succeeded."""
        delivered = 0
        for conn in self.members(room):
            try:
                await conn.send(event, data)
                delivered += 1
            except Exception as exc:
                logger.warning(
                    "Dropping %s to connection %s (user=%s): %s",
                    event, conn.id, conn.user_id, exc,
                )
        return delivered
