"""
Denormalised content items consumed by the scoring engine.

Posts, products, events and stories share a small interface (author, timestamps,
engagement, matchable text) but carry their own native fields. Each variant
maps its fields onto that interface; ``type`` is the wire discriminator.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Optional


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class CommentView:
    comment_id: str
    user_id: str
    username: Optional[str]
    display_name: Optional[str]
    content: str
    parent_id: Optional[str]
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.comment_id,
            "user": {
                "id": self.user_id,
                "username": self.username,
                "displayName": self.display_name,
            },
            "content": self.content,
            "parentId": self.parent_id,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class ContentItem:
    type: ClassVar[str] = ""

    id: str
    author_id: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    author_username: Optional[str] = None
    author_display_name: Optional[str] = None
    shares_count: int = 0
    liked_by: frozenset = field(default_factory=frozenset)
    commented_by: frozenset = field(default_factory=frozenset)
    comments: tuple = ()

    @property
    def likes_count(self) -> int:
        return len(self.liked_by)

    @property
    def comments_count(self) -> int:
        return len(self.comments)

    def engagement_score(self) -> float:
        return self.likes_count * 2 + self.comments_count * 3 + self.shares_count * 5

    def text_for_matching(self) -> str:
        raise NotImplementedError

    def interacted_by(self, user_id: str) -> bool:
        return user_id in self.liked_by or user_id in self.commented_by

    def _fields(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type,
            "authorId": self.author_id,
            "author": {
                "id": self.author_id,
                "username": self.author_username,
                "displayName": self.author_display_name,
            },
            "likesCount": self.likes_count,
            "commentsCount": self.comments_count,
            "sharesCount": self.shares_count,
            "comments": [c.to_dict() for c in self.comments],
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        data.update(self._fields())
        return data


@dataclass(frozen=True)
class PostItem(ContentItem):
    type: ClassVar[str] = "post"

    content: str = ""

    def text_for_matching(self) -> str:
        return self.content or ""

    def _fields(self) -> dict:
        return {"content": self.content}


@dataclass(frozen=True)
class ProductItem(ContentItem):
    type: ClassVar[str] = "product"

    title: str = ""
    description: str = ""
    price: float = 0.0
    category: str = ""
    condition: str = "new"
    status: str = "instock"

    def text_for_matching(self) -> str:
        return f"{self.title} {self.description}"

    def _fields(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "price": self.price,
            "category": self.category,
            "condition": self.condition,
            "status": self.status,
        }


@dataclass(frozen=True)
class EventItem(ContentItem):
    type: ClassVar[str] = "event"

    event_title: str = ""
    event_details: str = ""
    event_date: Optional[datetime] = None
    event_location: str = ""
    interested: frozenset = field(default_factory=frozenset)

    @property
    def interested_count(self) -> int:
        return len(self.interested)

    def engagement_score(self) -> float:
        return super().engagement_score() + self.interested_count * 4

    def text_for_matching(self) -> str:
        return f"{self.event_title} {self.event_details}"

    def interacted_by(self, user_id: str) -> bool:
        return super().interacted_by(user_id) or user_id in self.interested

    def _fields(self) -> dict:
        return {
            "eventTitle": self.event_title,
            "eventDetails": self.event_details,
            "eventDate": _iso(self.event_date),
            "eventLocation": self.event_location,
            "interestedCount": self.interested_count,
        }


@dataclass(frozen=True)
class StoryItem(ContentItem):
    type: ClassVar[str] = "story"

    text: str = ""
    text_color: str = "#ffffff"

    def text_for_matching(self) -> str:
        return self.text or ""

    def _fields(self) -> dict:
        return {"text": self.text, "textColor": self.text_color}
