import asyncio
import json
import logging
import uuid

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app import main
from app.auth import create_access_token
from app.clients.redis_client import relay_room_events
from app.main import app
from app.models import Conversation
from app.realtime.broadcaster import LocalBroadcaster, RedisBroadcaster
from app.realtime.presence import LocalPresence, RedisPresence
from app.realtime.rooms import Connection, RoomManager, conversation_room, user_room
from app.realtime.socket import get_conversation_loader


class _FakeSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


class _FakeRedis:
    """The handful of Redis commands presence and broadcast use."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, int]] = {}
        self.published: list[tuple[str, str]] = []

    async def hincrby(self, key, field, amount):
        bucket = self.hashes.setdefault(key, {})
        bucket[field] = bucket.get(field, 0) + amount
        return bucket[field]

    async def hdel(self, key, field):
        self.hashes.get(key, {}).pop(field, None)

    async def hget(self, key, field):
        value = self.hashes.get(key, {}).get(field)
        return None if value is None else str(value)

    async def publish(self, channel, message):
        self.published.append((channel, message))


# ── Rooms ───────────────────────────────────────────────────────────────────

def test_connect_joins_personal_room_and_disconnect_leaves_everything():
    rooms = RoomManager()
    conn = Connection(_FakeSocket(), "u1")
    rooms.connect(conn)
    assert rooms.join(conn, "conversation:c1") is True
    assert rooms.join(conn, "conversation:c1") is False

    assert rooms.is_user_in_room("u1", user_room("u1"))
    assert rooms.connection_count == 1

    left = rooms.disconnect(conn)
    assert left == ["conversation:c1", "user:u1"]
    assert rooms.connection_count == 0
    assert rooms.members("conversation:c1") == set()


@pytest.mark.asyncio
async def test_emit_skips_failing_connections():
    rooms = RoomManager()
    good, bad = _FakeSocket(), _FakeSocket(fail=True)
    for socket, user in ((good, "u1"), (bad, "u2")):
        conn = Connection(socket, user)
        rooms.connect(conn)
        rooms.join(conn, "conversation:c1")

    delivered = await rooms.emit("conversation:c1", "receive_message", {"id": "m1"})
    assert delivered == 1
    assert good.sent == [{"event": "receive_message", "data": {"id": "m1"}}]


@pytest.mark.asyncio
async def test_local_broadcaster_and_presence_share_the_registry():
    rooms = RoomManager()
    socket = _FakeSocket()
    conn = Connection(socket, "u1")
    rooms.connect(conn)

    presence = LocalPresence(rooms)
    assert await presence.is_present("u1", "conversation:c1") is False
    rooms.join(conn, "conversation:c1")
    assert await presence.is_present("u1", "conversation:c1") is True

    await LocalBroadcaster(rooms).emit_to_room(user_room("u1"), "message_deleted", {"messageId": "m"})
    assert socket.sent[0]["event"] == "message_deleted"


# ── Redis-backed variants ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_redis_presence_counts_connections():
    redis = _FakeRedis()
    presence = RedisPresence(redis, prefix="presence")

    await presence.mark_joined("u1", "conversation:c1")
    await presence.mark_joined("u1", "conversation:c1")
    await presence.mark_left("u1", "conversation:c1")
    assert await presence.is_present("u1", "conversation:c1") is True

    await presence.mark_left("u1", "conversation:c1")
    assert await presence.is_present("u1", "conversation:c1") is False
    assert redis.hashes["presence:conversation:c1"] == {}


@pytest.mark.asyncio
async def test_redis_broadcaster_publishes_envelope():
    redis = _FakeRedis()
    await RedisBroadcaster(redis, "realtime:events").emit_to_room(
        "conversation:c1", "receive_message", {"id": "m1"}
    )
    channel, raw = redis.published[0]
    assert channel == "realtime:events"
    assert json.loads(raw) == {
        "room": "conversation:c1",
        "event": "receive_message",
        "data": {"id": "m1"},
    }


class _PubSub:
    """One subscription: either drops immediately or replays messages then idles."""

    def __init__(self, messages=(), fail: bool = False) -> None:
        self.messages = list(messages)
        self.fail = fail
        self.closed = False

    async def subscribe(self, channel):
        pass

    async def listen(self):
        if self.fail:
            raise ConnectionError("redis gone")
        for message in self.messages:
            yield message
        await asyncio.Event().wait()

    async def unsubscribe(self, channel):
        pass

    async def aclose(self):
        self.closed = True


class _RelayRedis:
    def __init__(self, *subscriptions: _PubSub) -> None:
        self.subscriptions = list(subscriptions)
        self.closed = False

    def pubsub(self):
        return self.subscriptions.pop(0)

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_relay_resubscribes_after_losing_redis(caplog):
    rooms = RoomManager()
    socket = _FakeSocket()
    rooms.connect(Connection(socket, "u1"))
    envelope = json.dumps({"room": user_room("u1"), "event": "message_deleted", "data": {"messageId": "m1"}})
    dropped = _PubSub(fail=True)
    healthy = _PubSub([{"type": "subscribe", "data": 1}, {"type": "message", "data": envelope}])

    with caplog.at_level(logging.ERROR, logger="app.clients.redis_client"):
        relay = asyncio.create_task(
            relay_room_events(_RelayRedis(dropped, healthy), "realtime:events", rooms, retry_seconds=0)
        )
        for _ in range(50):
            if socket.sent:
                break
            await asyncio.sleep(0.01)
        relay.cancel()
        with pytest.raises(asyncio.CancelledError):
            await relay

    assert socket.sent == [{"event": "message_deleted", "data": {"messageId": "m1"}}]
    assert dropped.closed and healthy.closed
    assert any(
        record.exc_info and isinstance(record.exc_info[1], ConnectionError) for record in caplog.records
    )


@pytest.mark.asyncio
async def test_shutdown_closes_redis_after_relay_failure(monkeypatch, caplog):
    redis = _RelayRedis()

    async def connect(_settings):
        return redis

    async def broken_relay(*_args):
        raise ConnectionError("redis gone")

    monkeypatch.setattr(main, "create_redis", connect)
    monkeypatch.setattr(main, "relay_room_events", broken_relay)
    monkeypatch.setattr(main.settings, "realtime_backend", "redis")
    for name in ("broadcaster", "presence"):
        monkeypatch.setattr(app.state, name, getattr(app.state, name))

    with caplog.at_level(logging.ERROR, logger="app.main"):
        async with main.lifespan(app):
            await asyncio.sleep(0)

    assert redis.closed
    assert "Realtime relay stopped with an error" in caplog.text


# ── WebSocket endpoint ──────────────────────────────────────────────────────

ALICE = str(uuid.uuid4())
BOB = str(uuid.uuid4())
MALLORY = str(uuid.uuid4())
CONVERSATION_ID = str(uuid.uuid4())


@pytest.fixture
def ws_client():
    conversation = Conversation(
        conversation_id=CONVERSATION_ID, user_one_id=ALICE, user_two_id=BOB
    )

    async def load(conversation_id):
        return conversation if conversation_id == CONVERSATION_ID else None

    rooms = RoomManager()
    previous = (app.state.rooms, app.state.presence)
    app.state.rooms = rooms
    app.state.presence = LocalPresence(rooms)
    app.dependency_overrides[get_conversation_loader] = lambda: load
    yield TestClient(app), rooms
    app.dependency_overrides.pop(get_conversation_loader, None)
    app.state.rooms, app.state.presence = previous


def _join(ws, conversation_id):
    ws.send_text(json.dumps({"event": "join_conversation", "data": {"conversationId": conversation_id}}))
    return ws.receive_json()


@pytest.mark.parametrize("token", [None, "not-a-jwt"])
def test_handshake_rejects_missing_or_invalid_token(ws_client, token):
    client, _ = ws_client
    url = "/ws" if token is None else f"/ws?token={token}"
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(url):
            pass
    assert exc.value.code == 1008


def test_join_and_leave_conversation(ws_client):
    client, rooms = ws_client
    token = create_access_token(ALICE)

    with client.websocket_connect(f"/ws?token={token}") as ws:
        reply = _join(ws, CONVERSATION_ID)
        assert reply == {
            "event": "join_conversation",
            "data": {"success": True, "conversationId": CONVERSATION_ID},
        }
        assert rooms.is_user_in_room(ALICE, conversation_room(CONVERSATION_ID))

        ws.send_text(json.dumps({"event": "leave_conversation", "data": {"conversationId": CONVERSATION_ID}}))
        assert ws.receive_json()["data"]["success"] is True
        assert not rooms.is_user_in_room(ALICE, conversation_room(CONVERSATION_ID))

    assert rooms.connection_count == 0


def test_bearer_header_is_accepted(ws_client):
    client, rooms = ws_client
    headers = {"Authorization": f"Bearer {create_access_token(BOB)}"}
    with client.websocket_connect("/ws", headers=headers) as ws:
        assert _join(ws, CONVERSATION_ID)["data"]["success"] is True


def test_join_errors_are_explicit(ws_client):
    client, rooms = ws_client

    with client.websocket_connect(f"/ws?token={create_access_token(MALLORY)}") as ws:
        assert _join(ws, "garbage")["data"] == {
            "success": False,
            "conversationId": "garbage",
            "error": "Invalid conversation ID",
        }
        missing = str(uuid.uuid4())
        assert _join(ws, missing)["data"]["error"] == "Conversation not found"
        assert _join(ws, CONVERSATION_ID)["data"]["error"] == "Not authorized to join this conversation"
        assert not rooms.is_user_in_room(MALLORY, conversation_room(CONVERSATION_ID))


def test_malformed_frames_get_error_events(ws_client):
    client, _ = ws_client
    with client.websocket_connect(f"/ws?token={create_access_token(ALICE)}") as ws:
        ws.send_text("{not json")
        assert ws.receive_json() == {
            "event": "error",
            "data": {"success": False, "error": "Invalid message format"},
        }

        ws.send_text(json.dumps({"event": "typing", "data": {}}))
        assert ws.receive_json()["data"]["error"] == "Unknown event: typing"


def test_binary_frames_get_error_events(ws_client):
    client, _ = ws_client
    with client.websocket_connect(f"/ws?token={create_access_token(ALICE)}") as ws:
        ws.send_bytes(b"\x00\x01")
        assert ws.receive_json() == {
            "event": "error",
            "data": {"success": False, "error": "Invalid message format"},
        }
        assert _join(ws, CONVERSATION_ID)["data"]["success"] is True
