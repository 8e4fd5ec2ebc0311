"""
WebSocket endpoint — GET /ws

Handshake: bearer token from ?token= or the Authorization header. A missing or
invalid token closes the socket with 1008 before it is accepted.

Frames are JSON {"event": <name>, "data": {...}} in both directions.
Client events:
  join_conversation  {conversationId} — participants only
  leave_conversation {conversationId}
Replies reuse the event name with {success, conversationId, error?}.
"""
import json
import logging
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.auth import decode_access_token
from app.database import get_session_factory
from app.errors import AuthenticationError, ValidationError, parse_id
from app.models import Conversation
from app.realtime.rooms import Connection, conversation_room

logger = logging.getLogger(__name__)
router = APIRouter()

ConversationLoader = Callable[[str], Awaitable[Optional[Conversation]]]


def get_conversation_loader(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> ConversationLoader:
    async def load(conversation_id: str) -> Optional[Conversation]:
        async with session_factory() as session:
            return await session.get(Conversation, conversation_id)

    return load


def _token_from(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


class SocketSession:
    """Per-connection frame handling."""

    def __init__(self, conn: Connection, state, load_conversation: ConversationLoader) -> None:
        self.conn = conn
        self.rooms = state.rooms
        self.presence = state.presence
        self.load_conversation = load_conversation

    async def _mark(self, joined: bool, room: str) -> None:
        try:
            if joined:
                await self.presence.mark_joined(self.conn.user_id, room)
            else:
                await self.presence.mark_left(self.conn.user_id, room)
        except Exception as exc:
            logger.warning("Presence update for %s in %s failed: %s", self.conn.user_id, room, exc)

    async def open(self) -> None:
        self.rooms.connect(self.conn)
        for room in list(self.conn.rooms):
            await self._mark(True, room)

    async def close(self) -> None:
        for room in self.rooms.disconnect(self.conn):
            await self._mark(False, room)

    async def handle(self, raw: Optional[str]) -> None:
        """Dispatch one client frame; binary frames arrive as None."""
        try:
            frame = json.loads(raw) if raw is not None else None
        except ValueError:
            await self.conn.send("error", {"success": False, "error": "Invalid message format"})
            return
        if not isinstance(frame, dict):
            await self.conn.send("error", {"success": False, "error": "Invalid message format"})
            return

        event = frame.get("event")
        data = frame.get("data") if isinstance(frame.get("data"), dict) else {}
        if event == "join_conversation":
            await self.join(data.get("conversationId"))
        elif event == "leave_conversation":
            await self.leave(data.get("conversationId"))
        else:
            await self.conn.send("error", {"success": False, "error": f"Unknown event: {event}"})

    async def _reply(self, event: str, conversation_id, error: Optional[str] = None) -> None:
        data = {"success": error is None, "conversationId": conversation_id}
        if error is not None:
            data["error"] = error
        await self.conn.send(event, data)

    async def join(self, raw_id) -> None:
        event = "join_conversation"
        try:
            conversation_id = parse_id(raw_id, "Invalid conversation ID")
        except ValidationError as exc:
            await self._reply(event, raw_id, exc.message)
            return
        try:
            conversation = await self.load_conversation(conversation_id)
        except Exception:
            logger.exception("Loading conversation %s failed", conversation_id)
            await self._reply(event, conversation_id, "Failed to join conversation")
            return
        if conversation is None:
            await self._reply(event, conversation_id, "Conversation not found")
            return
        if not conversation.has_participant(self.conn.user_id):
            await self._reply(event, conversation_id, "Not authorized to join this conversation")
            return

        room = conversation_room(conversation_id)
        if self.rooms.join(self.conn, room):
            await self._mark(True, room)
        logger.debug("User %s joined %s", self.conn.user_id, room)
        await self._reply(event, conversation_id)

    async def leave(self, raw_id) -> None:
        event = "leave_conversation"
        try:
            conversation_id = parse_id(raw_id, "Invalid conversation ID")
        except ValidationError as exc:
            await self._reply(event, raw_id, exc.message)
            return
        room = conversation_room(conversation_id)
        if self.rooms.leave(self.conn, room):
            await self._mark(False, room)
        await self._reply(event, conversation_id)


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    load_conversation: ConversationLoader = Depends(get_conversation_loader),
):
    token = _token_from(websocket)
    try:
        if not token:
            raise AuthenticationError("Token Not Provided!")
        auth = decode_access_token(token)
    except AuthenticationError as exc:
        logger.info("Rejected socket handshake: %s", exc.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    state = websocket.app.state
    session = SocketSession(Connection(websocket, auth.user_id), state, load_conversation)
    await session.open()
    state.metrics.realtime_connections.set(state.rooms.connection_count)
    logger.info("Socket %s connected (user=%s)", session.conn.id, auth.user_id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))
            await session.handle(message.get("text"))
    except WebSocketDisconnect:
        pass
    finally:
        await session.close()
        state.metrics.realtime_connections.set(state.rooms.connection_count)
        logger.info("Socket %s disconnected (user=%s)", session.conn.id, auth.user_id)
