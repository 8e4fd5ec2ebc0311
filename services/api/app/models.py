"""
SQLAlchemy ORM models.

Tables:
  users          — user profiles
  posts          — text posts
  products       — marketplace listings
  events         — events users can mark themselves interested in
  stories        — short-lived stories (only the last 24h reach the feed)
  likes          — user × content engagement (any content kind)
  comments       — comment forest on any content kind (parent_id for replies)
  event_interests— user × event "interested" marks
  conversations  — one-to-one conversation between two participants
  messages       — conversation messages + delivery status
  message_reactions / message_deletions / message_pins — per-user message state
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.mysql import DATETIME
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


# Microsecond precision on MySQL/TiDB; plain DATETIME truncates to seconds
Timestamp = DateTime().with_variant(DATETIME(fsp=6), "mysql")


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp; every Timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Content kinds — doubles as the `type` discriminator on the wire
POST = "post"
PRODUCT = "product"
EVENT = "event"
STORY = "story"

# Message delivery status, in order. Status only ever moves forward.
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_READ = "read"


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    avatar: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)


class Post(Base):
    __tablename__ = "posts"

    post_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        Timestamp, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_posts_user", "user_id"),
        Index("idx_posts_created", "created_at"),
    )


class Product(Base):
    __tablename__ = "products"

    product_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    category: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    condition: Mapped[str] = mapped_column(String(20), default="new", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="instock", nullable=False)
    shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        Timestamp, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_products_user", "user_id"),
        Index("idx_products_created", "created_at"),
    )


class Event(Base):
    __tablename__ = "events"

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    event_title: Mapped[str] = mapped_column(String(255), nullable=False)
    event_details: Mapped[str] = mapped_column(Text, nullable=False)
    event_date: Mapped[datetime] = mapped_column(Timestamp, nullable=False)
    event_location: Mapped[str] = mapped_column(String(255), nullable=False)
    shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        Timestamp, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_events_user", "user_id"),
        Index("idx_events_created", "created_at"),
    )


class Story(Base):
    __tablename__ = "stories"

    story_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    text: Mapped[str] = mapped_column(Text, default="", nullable=False)
    text_color: Mapped[str] = mapped_column(String(16), default="#ffffff", nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        Timestamp, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (Index("idx_stories_created", "created_at"),)


class Like(Base):
    __tablename__ = "likes"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    content_type: Mapped[str] = mapped_column(String(10), primary_key=True)
    content_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_likes_content", "content_type", "content_id"),)


class Comment(Base):
    __tablename__ = "comments"

    comment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    content_type: Mapped[str] = mapped_column(String(10), nullable=False)
    content_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    # Replies point at a comment on the same content item; roots are NULL
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("comments.comment_id")
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_comments_content", "content_type", "content_id"),)


class EventInterest(Base):
    __tablename__ = "event_interests"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("events.event_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)


class Conversation(Base):
    __tablename__ = "conversations"

    conversation_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=_uuid
    )
    user_one_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    user_two_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    user_one_unread: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    user_two_unread: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)

    # Lookup index only. Not unique: concurrent find-or-create may produce a
    # duplicate pair.
    __table_args__ = (
        Index("idx_conversations_pair", "user_one_id", "user_two_id"),
        Index("idx_conversations_user_two", "user_two_id"),
    )

    @property
    def participants(self) -> list[str]:
        return [self.user_one_id, self.user_two_id]

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.user_one_id, self.user_two_id)

    def other_participant(self, user_id: str) -> str:
        return self.user_two_id if user_id == self.user_one_id else self.user_one_id

    def set_unread(self, user_id: str, count: int) -> None:
        if user_id == self.user_one_id:
            self.user_one_unread = count
        elif user_id == self.user_two_id:
            self.user_two_unread = count


class Message(Base):
    __tablename__ = "messages"

    message_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.conversation_id"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # Snapshots taken at send time, not live links
    product: Mapped[Optional[dict]] = mapped_column(JSON)
    event: Mapped[Optional[dict]] = mapped_column(JSON)
    is_ai_response: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(10), default=STATUS_SENT, nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        Timestamp, default=utcnow, onupdate=utcnow, nullable=False
    )

    sender = relationship("User", lazy="joined")

    __table_args__ = (
        Index("idx_messages_conversation", "conversation_id", "created_at"),
    )


class MessageReaction(Base):
    __tablename__ = "message_reactions"

    message_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("messages.message_id"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    emoji: Mapped[str] = mapped_column(String(32), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)


class MessageDeletion(Base):
    """Per-viewer tombstone; the message row itself is never removed."""

    __tablename__ = "message_deletions"

    message_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("messages.message_id"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)


class MessagePin(Base):
    __tablename__ = "message_pins"

    message_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("messages.message_id"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)
