"""
Persistence for conversations, messages and per-user message state.

Bulk status changes and counters are single UPDATE / COUNT statements so
concurrent requests rely on the database's row-level atomicity rather than
application locks. Toggles (reactions, pins) are read-modify-write and
last-write-wins.
"""
import logging
from collections import defaultdict
from typing import Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    STATUS_READ,
    Conversation,
    Message,
    MessageDeletion,
    MessagePin,
    MessageReaction,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def commit(self) -> None:
        await self._db.commit()

    # ── Users ──────────────────────────────────────────────────────────────

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._db.get(User, user_id)

    async def load_users(self, user_ids) -> dict[str, User]:
        ids = list({u for u in user_ids if u})
        if not ids:
            return {}
        rows = await self._db.execute(select(User).where(User.user_id.in_(ids)))
        return {u.user_id: u for u in rows.scalars().all()}

    # ── Conversations ──────────────────────────────────────────────────────

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        return await self._db.get(Conversation, conversation_id)

    async def find_between(self, user_a: str, user_b: str) -> Optional[Conversation]:
        rows = await self._db.execute(
            select(Conversation)
            .where(
                or_(
                    and_(Conversation.user_one_id == user_a, Conversation.user_two_id == user_b),
                    and_(Conversation.user_one_id == user_b, Conversation.user_two_id == user_a),
                )
            )
            .order_by(Conversation.created_at)
            .limit(1)
        )
        return rows.scalars().first()

    async def create(self, user_a: str, user_b: str) -> Conversation:
        now = utcnow()
        conversation = Conversation(
            user_one_id=user_a, user_two_id=user_b, created_at=now, updated_at=now
        )
        self._db.add(conversation)
        await self._db.flush()
        return conversation

    async def list_for_user(self, user_id: str) -> list[Conversation]:
        rows = await self._db.execute(
            select(Conversation)
            .where(or_(Conversation.user_one_id == user_id, Conversation.user_two_id == user_id))
            .order_by(Conversation.updated_at.desc())
        )
        return list(rows.scalars().all())

    async def touch(self, conversation: Conversation) -> None:
        conversation.updated_at = utcnow()
        await self._db.flush()

    # ── Messages ───────────────────────────────────────────────────────────

    async def add_message(self, **fields) -> Message:
        message = Message(**fields)
        self._db.add(message)
        await self._db.flush()
        await self._db.refresh(message, attribute_names=["sender"])
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        return await self._db.get(Message, message_id)

    async def last_message(self, conversation_id: str) -> Optional[Message]:
        rows = await self._db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc())
            .limit(1)
        )
        return rows.scalars().first()

    async def list_messages(self, conversation_id: str, viewer_id: str) -> list[Message]:
        """Messages in send order, without those the viewer deleted for themselves."""
        hidden = select(MessageDeletion.message_id).where(MessageDeletion.user_id == viewer_id)
        rows = await self._db.execute(
            select(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.message_id.not_in(hidden),
            )
            .order_by(Message.created_at)
        )
        return list(rows.scalars().unique().all())

    async def count_unread(self, conversation_id: str, reader_id: str) -> int:
        return await self._db.scalar(
            select(func.count())
            .select_from(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.sender_id != reader_id,
                Message.is_read.is_(False),
                Message.is_ai_response.is_(False),
            )
        )

    async def mark_read(self, conversation_id: str, reader_id: str) -> list[str]:
        """Move every unread message from the other side to read; returns their ids."""
        criteria = (
            Message.conversation_id == conversation_id,
            Message.sender_id != reader_id,
            Message.status != STATUS_READ,
            Message.is_ai_response.is_(False),
        )
        ids = list((await self._db.execute(select(Message.message_id).where(*criteria))).scalars())
        if ids:
            await self._db.execute(
                update(Message)
                .where(*criteria)
                .values(status=STATUS_READ, is_read=True, updated_at=utcnow())
            )
        return ids

    # ── Reactions ──────────────────────────────────────────────────────────

    async def toggle_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
        """Remove the (user, emoji) reaction if present, else add it. True when added."""
        existing = await self._db.get(MessageReaction, (message_id, user_id, emoji))
        if existing:
            await self._db.delete(existing)
            await self._db.flush()
            return False
        self._db.add(MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji))
        await self._db.flush()
        return True

    async def reactions_for(self, message_ids: list[str]) -> dict[str, list[dict]]:
        if not message_ids:
            return {}
        rows = await self._db.execute(
            select(MessageReaction)
            .where(MessageReaction.message_id.in_(message_ids))
            .order_by(MessageReaction.created_at)
        )
        result: dict[str, list[dict]] = defaultdict(list)
        for r in rows.scalars().all():
            result[r.message_id].append({"userId": r.user_id, "emoji": r.emoji})
        return result

    # ── Per-viewer deletion ────────────────────────────────────────────────

    async def mark_deleted_for(self, message_id: str, user_id: str) -> bool:
        """Hide a message for one viewer; False when it was already hidden."""
        if await self._db.get(MessageDeletion, (message_id, user_id)):
            return False
        self._db.add(MessageDeletion(message_id=message_id, user_id=user_id))
        await self._db.flush()
        return True

    # ── Pins ───────────────────────────────────────────────────────────────

    async def clear_other_pins(self, conversation_id: str, keep_message_id: str) -> list[str]:
        """Unpin every message in the conversation except one; returns unpinned ids."""
        others = select(Message.message_id).where(
            Message.conversation_id == conversation_id,
            Message.message_id != keep_message_id,
        )
        pinned = await self._db.execute(
            select(MessagePin.message_id).where(MessagePin.message_id.in_(others)).distinct()
        )
        unpinned = list(pinned.scalars().all())
        if unpinned:
            await self._db.execute(
                delete(MessagePin)
                .where(MessagePin.message_id.in_(unpinned))
            )
        return unpinned

    async def toggle_pin(self, message_id: str, user_id: str) -> bool:
        existing = await self._db.get(MessagePin, (message_id, user_id))
        if existing:
            await self._db.delete(existing)
            await self._db.flush()
            return False
        self._db.add(MessagePin(message_id=message_id, user_id=user_id))
        await self._db.flush()
        return True

    async def pins_for(self, message_ids: list[str]) -> dict[str, list[str]]:
        if not message_ids:
            return {}
        rows = await self._db.execute(
            select(MessagePin.message_id, MessagePin.user_id)
            .where(MessagePin.message_id.in_(message_ids))
            .order_by(MessagePin.created_at)
        )
        result: dict[str, list[str]] = defaultdict(list)
        for message_id, user_id in rows.all():
            result[message_id].append(user_id)
        return result
