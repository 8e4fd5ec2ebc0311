"""
Messaging service.

Message status is monotonic: sent → delivered → read.
  • A message starts 'delivered' when its recipient is present in the
    conversation room, otherwise 'sent'. AI responses start 'read'.
  • 'read' is applied in bulk by mark_read.

Every operation validates and authorizes before touching the store. After a
successful commit a realtime event is scheduled as a background task; a
failed emit is logged and counted, never surfaced to the caller.
"""
import asyncio
import logging
from typing import Optional

from opentelemetry import trace

from app.errors import AuthorizationError, NotFoundError, ValidationError, parse_id
from app.models import (
    STATUS_DELIVERED,
    STATUS_READ,
    STATUS_SENT,
    Conversation,
    Message,
    utcnow,
)
from app.realtime.broadcaster import Broadcaster
from app.realtime.presence import PresenceTracker
from app.realtime.rooms import conversation_room, user_room
from app.schemas import (
    ConversationOut,
    DeleteMessageResponse,
    EventSnapshot,
    MarkReadResponse,
    MessageOut,
    PinResponse,
    ProductSnapshot,
    Reaction,
    ReactionResponse,
    UserSummary,
)
from app.stores.conversation_store import ConversationStore
from app.telemetry import MetricsCollector

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_EMOJI_LENGTH = 5


def _summary(user) -> Optional[UserSummary]:
    if user is None:
        return None
    return UserSummary(
        id=user.user_id,
        username=user.username,
        display_name=user.display_name,
        avatar=user.avatar,
    )


def format_message(
    message: Message,
    reactions: Optional[list[dict]] = None,
    pinned_by: Optional[list[str]] = None,
) -> MessageOut:
    return MessageOut(
        id=message.message_id,
        conversation_id=message.conversation_id,
        sender=_summary(message.sender),
        content=message.content,
        product=ProductSnapshot(**message.product) if message.product else None,
        event=EventSnapshot(**message.event) if message.event else None,
        is_ai_response=message.is_ai_response,
        is_read=message.is_read,
        status=message.status,
        reactions=[Reaction(user_id=r["userId"], emoji=r["emoji"]) for r in reactions or []],
        pinned_by=list(pinned_by or []),
        created_at=message.created_at,
        updated_at=message.updated_at,
    )


class MessagingService:
    def __init__(
        self,
        store: ConversationStore,
        broadcaster: Broadcaster,
        presence: PresenceTracker,
        metrics: Optional[MetricsCollector] = None,
        pending: Optional[set] = None,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._presence = presence
        self._metrics = metrics
        # Strong references to in-flight emits, shared per app so shutdown can drain them
        self._pending: set[asyncio.Task] = pending if pending is not None else set()

    # ── Realtime ───────────────────────────────────────────────────────────

    def _emit(self, room: str, event: str, payload: dict) -> None:
        """Schedule a room emit without waiting for it."""
        task = asyncio.create_task(self._broadcaster.emit_to_room(room, event, payload))
        self._pending.add(task)
        task.add_done_callback(lambda t: self._emit_done(t, event, room))

    def _emit_done(self, task: asyncio.Task, event: str, room: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Realtime emit %s to %s failed: %s", event, room, exc)
            if self._metrics is not None:
                self._metrics.realtime_emit_errors.labels(event=event).inc()

    # ── Lookups ────────────────────────────────────────────────────────────

    async def _conversation_for(self, caller_id: str, raw_conversation_id, denied: str) -> Conversation:
        conversation_id = parse_id(raw_conversation_id, "Invalid conversation ID")
        conversation = await self._store.get(conversation_id)
        if not conversation:
            raise NotFoundError("Conversation not found")
        if not conversation.has_participant(caller_id):
            raise AuthorizationError(denied)
        return conversation

    async def _message_for(self, caller_id: str, raw_message_id, denied: str) -> tuple[Message, Conversation]:
        message_id = parse_id(raw_message_id, "Invalid message ID")
        message = await self._store.get_message(message_id)
        if not message:
            raise NotFoundError("Message not found")
        conversation = await self._store.get(message.conversation_id)
        if not conversation or not conversation.has_participant(caller_id):
            raise AuthorizationError(denied)
        return message, conversation

    async def _format_conversation(self, conversation: Conversation, caller_id: str) -> ConversationOut:
        users = await self._store.load_users(conversation.participants)
        last = await self._store.last_message(conversation.conversation_id)
        last_out = None
        if last is not None:
            reactions = await self._store.reactions_for([last.message_id])
            pins = await self._store.pins_for([last.message_id])
            last_out = format_message(
                last, reactions.get(last.message_id), pins.get(last.message_id)
            )
        unread = await self._store.count_unread(conversation.conversation_id, caller_id)
        return ConversationOut(
            id=conversation.conversation_id,
            participants=[
                _summary(users.get(uid)) or UserSummary(id=uid)
                for uid in conversation.participants
            ],
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            last_message=last_out,
            unread_count=unread,
        )

    # ── Conversations ──────────────────────────────────────────────────────

    async def create_conversation(self, caller_id: str, raw_other_id) -> ConversationOut:
        if not raw_other_id:
            raise ValidationError("Receiver ID is required")
        other_id = parse_id(raw_other_id, "Invalid receiver ID")
        if other_id == caller_id:
            raise ValidationError("Cannot create conversation with yourself")
        if not await self._store.get_user(other_id):
            raise NotFoundError("Receiver not found")

        # Find-or-create is not atomic: two racing calls may both create.
        conversation = await self._store.find_between(caller_id, other_id)
        if conversation is None:
            conversation = await self._store.create(caller_id, other_id)
            await self._store.commit()
            logger.info(
                "Conversation %s created between %s and %s",
                conversation.conversation_id, caller_id, other_id,
            )
        return await self._format_conversation(conversation, caller_id)

    async def list_conversations(self, caller_id: str) -> list[ConversationOut]:
        conversations = await self._store.list_for_user(caller_id)
        return [await self._format_conversation(c, caller_id) for c in conversations]

    # ── Messages ───────────────────────────────────────────────────────────

    async def send_message(
        self,
        caller_id: str,
        raw_conversation_id,
        content: Optional[str],
        product: Optional[ProductSnapshot] = None,
        event: Optional[EventSnapshot] = None,
        is_ai_response: bool = False,
    ) -> MessageOut:
        if not raw_conversation_id or not content or not content.strip():
            raise ValidationError("Conversation ID and content are required")
        conversation_id = parse_id(raw_conversation_id, "Invalid conversation ID")
        conversation = await self._store.get(conversation_id)
        if not conversation:
            raise NotFoundError("Conversation not found")
        is_participant = conversation.has_participant(caller_id)
        if not is_participant and not is_ai_response:
            raise AuthorizationError("Not authorized to send messages in this conversation")

        with tracer.start_as_current_span("send_message") as span:
            span.set_attribute("conversation.id", conversation_id)
            recipient_id = conversation.other_participant(caller_id) if is_participant else None

            if is_ai_response:
                status = STATUS_READ
            elif recipient_id and await self._recipient_present(recipient_id, conversation_id):
                status = STATUS_DELIVERED
            else:
                status = STATUS_SENT

            now = utcnow()
            message = await self._store.add_message(
                conversation_id=conversation_id,
                sender_id=caller_id,
                content=content.strip(),
                product=product.model_dump(exclude_none=True) if product else None,
                event=event.model_dump(exclude_none=True) if event else None,
                is_ai_response=bool(is_ai_response),
                is_read=status == STATUS_READ,
                status=status,
                created_at=now,
                updated_at=now,
            )
            await self._store.touch(conversation)
            if recipient_id:
                conversation.set_unread(
                    recipient_id,
                    await self._store.count_unread(conversation_id, recipient_id),
                )
            await self._store.commit()
            span.set_attribute("message.status", status)

        if self._metrics is not None:
            self._metrics.messages_sent.labels(status=status).inc()
        out = format_message(message)
        self._emit(
            conversation_room(conversation_id),
            "receive_message",
            out.model_dump(by_alias=True, mode="json"),
        )
        return out

    async def _recipient_present(self, recipient_id: str, conversation_id: str) -> bool:
        try:
            return await self._presence.is_present(recipient_id, conversation_room(conversation_id))
        except Exception as exc:
            logger.warning("Presence lookup failed for %s: %s", recipient_id, exc)
            return False

    async def list_messages(self, caller_id: str, raw_conversation_id) -> list[MessageOut]:
        conversation = await self._conversation_for(
            caller_id, raw_conversation_id, "Not authorized to view this conversation"
        )
        messages = await self._store.list_messages(conversation.conversation_id, caller_id)
        ids = [m.message_id for m in messages]
        reactions = await self._store.reactions_for(ids)
        pins = await self._store.pins_for(ids)
        return [
            format_message(m, reactions.get(m.message_id), pins.get(m.message_id))
            for m in messages
        ]

    async def mark_read(self, caller_id: str, raw_conversation_id) -> MarkReadResponse:
        conversation = await self._conversation_for(
            caller_id, raw_conversation_id, "Not authorized to view this conversation"
        )
        conversation_id = conversation.conversation_id
        read_ids = await self._store.mark_read(conversation_id, caller_id)
        unread = await self._store.count_unread(conversation_id, caller_id)
        conversation.set_unread(caller_id, unread)
        await self._store.commit()

        if read_ids:
            self._emit(
                conversation_room(conversation_id),
                "message_status_updated",
                {
                    "conversationId": conversation_id,
                    "readerId": caller_id,
                    "status": STATUS_READ,
                    "messageIds": read_ids,
                },
            )
        return MarkReadResponse(
            message="Messages marked as read",
            conversation_id=conversation_id,
            unread_count=unread,
            message_ids=read_ids,
        )

    async def delete_message(self, caller_id: str, raw_message_id) -> DeleteMessageResponse:
        message, conversation = await self._message_for(
            caller_id, raw_message_id, "Not authorized to delete this message"
        )
        if await self._store.mark_deleted_for(message.message_id, caller_id):
            await self._store.commit()

        # Only the deleting viewer's clients need to hide it
        self._emit(
            user_room(caller_id),
            "message_deleted",
            {
                "conversationId": conversation.conversation_id,
                "messageId": message.message_id,
                "userId": caller_id,
            },
        )
        return DeleteMessageResponse(
            message_id=message.message_id,
            conversation_id=conversation.conversation_id,
            deleted=True,
        )

    async def react_to_message(self, caller_id: str, raw_message_id, emoji: Optional[str]) -> ReactionResponse:
        """
        Toggle the caller's reaction on a message.

        Emoji length is counted in code points, not grapheme clusters: a skin
        tone variant (2) fits, a ZWJ family sequence (7) does not.
        """
        emoji = emoji.strip() if isinstance(emoji, str) else ""
        if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
            raise ValidationError(f"Emoji must be 1 to {MAX_EMOJI_LENGTH} characters")
        message, conversation = await self._message_for(
            caller_id, raw_message_id, "Not authorized to react to this message"
        )
        added = await self._store.toggle_reaction(message.message_id, caller_id, emoji)
        await self._store.commit()

        reactions = (await self._store.reactions_for([message.message_id])).get(message.message_id, [])
        self._emit(
            conversation_room(conversation.conversation_id),
            "message_reaction_updated",
            {
                "conversationId": conversation.conversation_id,
                "messageId": message.message_id,
                "userId": caller_id,
                "emoji": emoji,
                "added": added,
                "reactions": reactions,
            },
        )
        return ReactionResponse(
            message_id=message.message_id,
            conversation_id=conversation.conversation_id,
            reactions=[Reaction(user_id=r["userId"], emoji=r["emoji"]) for r in reactions],
        )

    async def pin_message(self, caller_id: str, raw_conversation_id, raw_message_id) -> PinResponse:
        conversation = await self._conversation_for(
            caller_id, raw_conversation_id, "Not authorized to pin messages in this conversation"
        )
        message_id = parse_id(raw_message_id, "Invalid message ID")
        message = await self._store.get_message(message_id)
        if not message or message.conversation_id != conversation.conversation_id:
            raise NotFoundError("Message not found")

        unpinned = await self._store.clear_other_pins(conversation.conversation_id, message_id)
        await self._store.toggle_pin(message_id, caller_id)
        await self._store.commit()

        pinned_by = (await self._store.pins_for([message_id])).get(message_id, [])
        self._emit(
            conversation_room(conversation.conversation_id),
            "message_pinned_updated",
            {
                "conversationId": conversation.conversation_id,
                "messageId": message_id,
                "pinnedBy": pinned_by,
                "unpinnedMessageIds": unpinned,
            },
        )
        return PinResponse(
            message_id=message_id,
            conversation_id=conversation.conversation_id,
            pinned_by=pinned_by,
            unpinned_message_ids=unpinned,
        )
