"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models to avoid coupling transport to storage.

Messaging schemas are camelCase on the wire (aliases) and snake_case in Python.
"""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ──────────────────────────── Users ───────────────────────────────────────

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    display_name: Optional[str] = None
    avatar: Optional[str] = None


class UserResponse(BaseModel):
    user_id: str
    username: str
    display_name: Optional[str]
    avatar: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UserSummary(CamelModel):
    id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar: Optional[str] = None


# ──────────────────────────── Content ─────────────────────────────────────

class PostCreate(BaseModel):
    content: str = Field(..., min_length=1)


class ProductCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    price: float = Field(..., ge=0)
    category: str = ""
    condition: str = Field("new", pattern="^(new|likenew|good|fair|poor)$")
    status: str = Field("instock", pattern="^(instock|lowstock|soldout)$")


class EventCreate(BaseModel):
    event_title: str = Field(..., min_length=1, max_length=255)
    event_details: str = Field(..., min_length=1)
    event_date: datetime
    event_location: str = Field(..., min_length=1)


class StoryCreate(BaseModel):
    text: str = Field("", max_length=500)
    text_color: str = "#ffffff"


class CommentCreate(CamelModel):
    content: str = Field(..., min_length=1)
    parent_id: Optional[str] = None


class ContentCreated(BaseModel):
    id: str
    type: str
    user_id: str
    created_at: datetime


class ToggleResponse(BaseModel):
    id: str
    type: str
    active: bool
    count: int


# ──────────────────────────── Feed ────────────────────────────────────────

class FeedRequest(BaseModel):
    user_id: Optional[Any] = None


class FeedResponse(BaseModel):
    """Ranked items; each item is the content dict plus score and flags."""
    message: str
    data: list[dict]


# ──────────────────────────── Messaging ───────────────────────────────────

class ProductSnapshot(CamelModel):
    id: Optional[str] = None
    title: Optional[str] = None
    price: Optional[float] = None
    image: Optional[str] = None
    condition: Optional[str] = None
    category: Optional[str] = None


class EventSnapshot(CamelModel):
    id: Optional[str] = None
    title: Optional[str] = None
    date: Optional[str] = None
    location: Optional[str] = None
    image: Optional[str] = None


class Reaction(CamelModel):
    user_id: str
    emoji: str


class MessageOut(CamelModel):
    id: str
    conversation_id: str
    sender: Optional[UserSummary] = None
    content: str
    product: Optional[ProductSnapshot] = None
    event: Optional[EventSnapshot] = None
    is_ai_response: bool = Field(False, alias="isAIResponse")
    is_read: bool
    status: str
    reactions: list[Reaction] = []
    pinned_by: list[str] = []
    created_at: datetime
    updated_at: Optional[datetime] = None


class ConversationOut(CamelModel):
    id: str
    participants: list[UserSummary]
    created_at: datetime
    updated_at: datetime
    last_message: Optional[MessageOut] = None
    unread_count: int = 0


class SendMessageRequest(CamelModel):
    conversation_id: Optional[str] = None
    content: Optional[str] = None
    product: Optional[ProductSnapshot] = None
    event: Optional[EventSnapshot] = None
    is_ai_response: bool = Field(False, alias="isAIResponse")


class CreateConversationRequest(CamelModel):
    receiver_id: Optional[str] = None


class ReactRequest(CamelModel):
    emoji: Optional[str] = None


class MarkReadResponse(CamelModel):
    message: str
    conversation_id: str
    unread_count: int
    message_ids: list[str]


class DeleteMessageResponse(CamelModel):
    message_id: str
    conversation_id: str
    deleted: bool


class ReactionResponse(CamelModel):
    message_id: str
    conversation_id: str
    reactions: list[Reaction]


class PinResponse(CamelModel):
    message_id: str
    conversation_id: str
    pinned_by: list[str]
    unpinned_message_ids: list[str]
