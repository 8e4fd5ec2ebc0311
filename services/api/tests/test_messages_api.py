import asyncio
import logging
import uuid

import pytest
from sqlalchemy import func, select

from app.auth import create_access_token
from app.main import app
from app.models import Message
from app.realtime.rooms import Connection, conversation_room
from conftest import auth_header, create_user


class _FakeSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send_json(self, data: dict) -> None:
        self.sent.append(data)


async def _drain():
    for _ in range(5):
        await asyncio.sleep(0)


async def _start(client, caller: str, other: str) -> str:
    response = await client.post(
        "/api/messages/conversation", json={"receiverId": other}, headers=auth_header(caller)
    )
    assert response.status_code == 201
    return response.json()["id"]


async def _send(client, caller: str, conversation_id: str, content: str = "hello", **extra):
    return await client.post(
        "/api/messages",
        json={"conversationId": conversation_id, "content": content, **extra},
        headers=auth_header(caller),
    )


@pytest.fixture
def users(session_maker):
    async def make(*names):
        return [await create_user(session_maker, name) for name in names]

    return make


# ── Conversations ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_conversation_is_find_or_create(client, users):
    alice, bob = await users("alice", "bob")

    first = await client.post(
        "/api/messages/conversation", json={"receiverId": bob}, headers=auth_header(alice)
    )
    assert first.status_code == 201
    body = first.json()
    assert {p["id"] for p in body["participants"]} == {alice, bob}
    assert body["unreadCount"] == 0
    assert body["lastMessage"] is None

    # Either side, either order, lands on the same conversation
    again = await _start(client, bob, alice)
    assert again == body["id"]


@pytest.mark.asyncio
async def test_create_conversation_validation(client, users):
    (alice,) = await users("alice")
    headers = auth_header(alice)

    missing = await client.post("/api/messages/conversation", json={}, headers=headers)
    assert missing.status_code == 400
    assert missing.json()["message"] == "Receiver ID is required"

    malformed = await client.post("/api/messages/conversation", json={"receiverId": "nope"}, headers=headers)
    assert malformed.json()["message"] == "Invalid receiver ID"

    self_chat = await client.post("/api/messages/conversation", json={"receiverId": alice}, headers=headers)
    assert self_chat.status_code == 400
    assert self_chat.json()["message"] == "Cannot create conversation with yourself"

    unknown = await client.post(
        "/api/messages/conversation", json={"receiverId": str(uuid.uuid4())}, headers=headers
    )
    assert unknown.status_code == 404
    assert unknown.json()["message"] == "Receiver not found"


@pytest.mark.asyncio
async def test_uppercase_token_subject_is_the_same_user(client, users):
    alice, bob = await users("alice", "bob")
    shouting = {"Authorization": f"Bearer {create_access_token(alice.upper())}"}

    self_chat = await client.post("/api/messages/conversation", json={"receiverId": alice}, headers=shouting)
    assert self_chat.status_code == 400
    assert self_chat.json()["message"] == "Cannot create conversation with yourself"

    conversation_id = await _start(client, alice, bob)
    sent = await client.post(
        "/api/messages",
        json={"conversationId": conversation_id, "content": "same me"},
        headers=shouting,
    )
    assert sent.status_code == 201
    assert sent.json()["sender"]["id"] == alice


@pytest.mark.asyncio
async def test_concurrent_create_conversation_succeeds(client, users):
    alice, bob = await users("alice", "bob")

    responses = await asyncio.gather(
        client.post("/api/messages/conversation", json={"receiverId": bob}, headers=auth_header(alice)),
        client.post("/api/messages/conversation", json={"receiverId": alice}, headers=auth_header(bob)),
        return_exceptions=True,
    )
    created = [
        r.json() for r in responses
        if not isinstance(r, Exception) and r.status_code == 201
    ]
    assert created
    for conversation in created:
        assert {p["id"] for p in conversation["participants"]} == {alice, bob}


@pytest.mark.asyncio
async def test_conversation_list_orders_by_activity_and_counts_unread(client, users):
    alice, bob, carol = await users("alice", "bob", "carol")
    with_bob = await _start(client, alice, bob)
    with_carol = await _start(client, alice, carol)

    await _send(client, bob, with_bob, "one")
    await _send(client, bob, with_bob, "two")
    await _send(client, carol, with_carol, "latest")

    response = await client.get("/api/messages/conversations", headers=auth_header(alice))
    assert response.status_code == 200
    listed = response.json()
    assert [c["id"] for c in listed] == [with_carol, with_bob]
    assert listed[0]["lastMessage"]["content"] == "latest"
    assert listed[1]["unreadCount"] == 2

    bob_view = await client.get("/api/messages/conversations", headers=auth_header(bob))
    assert bob_view.json()[0]["unreadCount"] == 0


# ── Sending ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_send_status_depends_on_recipient_presence(client, users, rooms, broadcaster):
    alice, bob = await users("alice", "bob")
    conversation_id = await _start(client, alice, bob)

    first = await _send(client, alice, conversation_id, "are you there?")
    assert first.status_code == 201
    assert first.json()["status"] == "sent"
    assert first.json()["isRead"] is False

    rooms.join(Connection(_FakeSocket(), bob), conversation_room(conversation_id))

    second = await _send(client, alice, conversation_id, "now?")
    assert second.json()["status"] == "delivered"

    await _drain()
    emitted = broadcaster.named("receive_message")
    assert [room for room, _ in emitted] == [conversation_room(conversation_id)] * 2
    assert emitted[1][1]["content"] == "now?"
    assert emitted[1][1]["sender"]["username"] == "alice"


@pytest.mark.asyncio
async def test_send_validation_and_authorization(client, users):
    alice, bob, mallory = await users("alice", "bob", "mallory")
    conversation_id = await _start(client, alice, bob)

    empty = await _send(client, alice, conversation_id, "   ")
    assert empty.status_code == 400
    assert empty.json()["message"] == "Conversation ID and content are required"

    malformed = await _send(client, alice, "123", "hi")
    assert malformed.json()["message"] == "Invalid conversation ID"

    unknown = await _send(client, alice, str(uuid.uuid4()), "hi")
    assert unknown.status_code == 404

    outsider = await _send(client, mallory, conversation_id, "let me in")
    assert outsider.status_code == 403
    assert outsider.json()["message"] == "Not authorized to send messages in this conversation"


class _BrokenBroadcaster:
    async def emit_to_room(self, room: str, event: str, payload: dict) -> None:
        raise ConnectionError("transport down")


@pytest.mark.asyncio
async def test_failed_emit_does_not_fail_the_request(client, users, caplog):
    alice, bob = await users("alice", "bob")
    conversation_id = await _start(client, alice, bob)
    app.state.broadcaster = _BrokenBroadcaster()
    errors = app.state.metrics.registry

    def emit_errors():
        return errors.get_sample_value("realtime_emit_errors_total", {"event": "receive_message"}) or 0

    before = emit_errors()
    with caplog.at_level(logging.ERROR, logger="app.services.messaging_service"):
        response = await _send(client, alice, conversation_id, "still saved")
        await _drain()

    assert response.status_code == 201
    assert emit_errors() == before + 1
    assert any("transport down" in record.getMessage() for record in caplog.records)
    assert not app.state.background_emits


@pytest.mark.asyncio
async def test_ai_response_is_created_read_with_snapshots(client, users):
    alice, bob, assistant = await users("alice", "bob", "assistant")
    conversation_id = await _start(client, alice, bob)

    response = await _send(
        client, assistant, conversation_id, "Here is a listing",
        isAIResponse=True,
        product={"id": "prod-1", "title": "Desk lamp", "price": 12.5},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "read"
    assert body["isRead"] is True
    assert body["isAIResponse"] is True
    assert body["product"]["title"] == "Desk lamp"

    listed = await client.get("/api/messages/conversations", headers=auth_header(alice))
    assert listed.json()[0]["unreadCount"] == 0


# ── Reading ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_messages_ascending_and_participants_only(client, users):
    alice, bob, mallory = await users("alice", "bob", "mallory")
    conversation_id = await _start(client, alice, bob)
    for text in ("first", "second", "third"):
        await _send(client, alice, conversation_id, text)

    response = await client.get(f"/api/messages/conversation/{conversation_id}", headers=auth_header(bob))
    assert response.status_code == 200
    assert [m["content"] for m in response.json()] == ["first", "second", "third"]
    # Listing does not mark anything read
    assert {m["status"] for m in response.json()} == {"sent"}

    outsider = await client.get(f"/api/messages/conversation/{conversation_id}", headers=auth_header(mallory))
    assert outsider.status_code == 403
    assert outsider.json()["message"] == "Not authorized to view this conversation"


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(client, users, broadcaster):
    alice, bob = await users("alice", "bob")
    conversation_id = await _start(client, alice, bob)
    sent = [(await _send(client, alice, conversation_id, t)).json()["id"] for t in ("a", "b")]
    await _send(client, bob, conversation_id, "reply")

    first = await client.post(f"/api/messages/conversation/{conversation_id}/read", headers=auth_header(bob))
    assert first.status_code == 200
    body = first.json()
    assert body["message"] == "Messages marked as read"
    assert sorted(body["messageIds"]) == sorted(sent)
    assert body["unreadCount"] == 0

    second = await client.post(f"/api/messages/conversation/{conversation_id}/read", headers=auth_header(bob))
    assert second.json()["messageIds"] == []
    assert second.json()["unreadCount"] == 0

    messages = await client.get(f"/api/messages/conversation/{conversation_id}", headers=auth_header(alice))
    statuses = {m["content"]: m["status"] for m in messages.json()}
    assert statuses == {"a": "read", "b": "read", "reply": "sent"}

    await _drain()
    updates = broadcaster.named("message_status_updated")
    assert len(updates) == 1
    assert updates[0][1]["readerId"] == bob
    assert updates[0][1]["status"] == "read"


# ── Per-viewer state ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_delete_hides_for_caller_only_and_keeps_row(client, users, session_maker, broadcaster):
    alice, bob = await users("alice", "bob")
    conversation_id = await _start(client, alice, bob)
    message_id = (await _send(client, alice, conversation_id, "oops")).json()["id"]

    for _ in range(2):
        response = await client.post(f"/api/messages/message/{message_id}/delete", headers=auth_header(bob))
        assert response.status_code == 200
        assert response.json() == {
            "messageId": message_id,
            "conversationId": conversation_id,
            "deleted": True,
        }

    bob_view = await client.get(f"/api/messages/conversation/{conversation_id}", headers=auth_header(bob))
    alice_view = await client.get(f"/api/messages/conversation/{conversation_id}", headers=auth_header(alice))
    assert bob_view.json() == []
    assert [m["id"] for m in alice_view.json()] == [message_id]

    async with session_maker() as session:
        count = await session.scalar(select(func.count()).select_from(Message))
    assert count == 1

    await _drain()
    assert {room for room, _ in broadcaster.named("message_deleted")} == {f"user:{bob}"}


@pytest.mark.asyncio
async def test_delete_requires_participant(client, users):
    alice, bob, mallory = await users("alice", "bob", "mallory")
    conversation_id = await _start(client, alice, bob)
    message_id = (await _send(client, alice, conversation_id)).json()["id"]

    response = await client.post(f"/api/messages/message/{message_id}/delete", headers=auth_header(mallory))
    assert response.status_code == 403

    missing = await client.post(f"/api/messages/message/{uuid.uuid4()}/delete", headers=auth_header(alice))
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_reaction_toggle_is_its_own_inverse(client, users, broadcaster):
    alice, bob = await users("alice", "bob")
    conversation_id = await _start(client, alice, bob)
    message_id = (await _send(client, alice, conversation_id)).json()["id"]
    url = f"/api/messages/message/{message_id}/react"

    added = await client.post(url, json={"emoji": "👍"}, headers=auth_header(bob))
    assert added.status_code == 200
    assert added.json()["reactions"] == [{"userId": bob, "emoji": "👍"}]

    await client.post(url, json={"emoji": "❤️"}, headers=auth_header(bob))
    removed = await client.post(url, json={"emoji": "👍"}, headers=auth_header(bob))
    assert removed.json()["reactions"] == [{"userId": bob, "emoji": "❤️"}]

    cleared = await client.post(url, json={"emoji": "❤️"}, headers=auth_header(bob))
    assert cleared.json()["reactions"] == []

    await _drain()
    flags = [payload["added"] for _, payload in broadcaster.named("message_reaction_updated")]
    assert flags == [True, True, False, False]


@pytest.mark.asyncio
async def test_reaction_validation(client, users):
    alice, bob, mallory = await users("alice", "bob", "mallory")
    conversation_id = await _start(client, alice, bob)
    message_id = (await _send(client, alice, conversation_id)).json()["id"]
    url = f"/api/messages/message/{message_id}/react"

    family = "\U0001F468\u200D\U0001F469\u200D\U0001F467\u200D\U0001F466"
    for emoji in ("", "   ", "toolong", family):
        response = await client.post(url, json={"emoji": emoji}, headers=auth_header(bob))
        assert response.status_code == 400

    skin_tone = await client.post(url, json={"emoji": "\U0001F44D\U0001F3FD"}, headers=auth_header(bob))
    assert skin_tone.status_code == 200

    outsider = await client.post(url, json={"emoji": "👍"}, headers=auth_header(mallory))
    assert outsider.status_code == 403
    assert outsider.json()["message"] == "Not authorized to react to this message"


@pytest.mark.asyncio
async def test_pinning_keeps_one_pinned_message_per_conversation(client, users, broadcaster):
    alice, bob = await users("alice", "bob")
    conversation_id = await _start(client, alice, bob)
    first = (await _send(client, alice, conversation_id, "first")).json()["id"]
    second = (await _send(client, alice, conversation_id, "second")).json()["id"]

    def pin_url(message_id):
        return f"/api/messages/conversation/{conversation_id}/message/{message_id}/pin"

    pinned = await client.post(pin_url(first), headers=auth_header(alice))
    assert pinned.status_code == 200
    assert pinned.json()["pinnedBy"] == [alice]
    assert pinned.json()["unpinnedMessageIds"] == []

    moved = await client.post(pin_url(second), headers=auth_header(bob))
    assert moved.json()["pinnedBy"] == [bob]
    assert moved.json()["unpinnedMessageIds"] == [first]

    listing = await client.get(f"/api/messages/conversation/{conversation_id}", headers=auth_header(alice))
    pins = {m["id"]: m["pinnedBy"] for m in listing.json()}
    assert pins == {first: [], second: [bob]}

    # Pinning again by the same user unpins
    toggled = await client.post(pin_url(second), headers=auth_header(bob))
    assert toggled.json()["pinnedBy"] == []

    await _drain()
    assert len(broadcaster.named("message_pinned_updated")) == 3


@pytest.mark.asyncio
async def test_pin_rejects_message_from_another_conversation(client, users):
    alice, bob, carol = await users("alice", "bob", "carol")
    with_bob = await _start(client, alice, bob)
    with_carol = await _start(client, alice, carol)
    foreign = (await _send(client, alice, with_carol, "elsewhere")).json()["id"]

    response = await client.post(
        f"/api/messages/conversation/{with_bob}/message/{foreign}/pin", headers=auth_header(alice)
    )
    assert response.status_code == 404

    outsider = await client.post(
        f"/api/messages/conversation/{with_bob}/message/{foreign}/pin", headers=auth_header(carol)
    )
    assert outsider.status_code == 403
