"""
Read side of the content collections.

Assembles denormalised ContentItems (author, likers, comments, interested
users) from the SQL tables. Every public fetch opens its own session so the
feed aggregator can run them concurrently.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from app.models import (
    EVENT,
    POST,
    PRODUCT,
    STORY,
    Comment,
    Event,
    EventInterest,
    Like,
    Post,
    Product,
    Story,
    User,
)
from app.ranking.content import (
    CommentView,
    ContentItem,
    EventItem,
    PostItem,
    ProductItem,
    StoryItem,
)

logger = logging.getLogger(__name__)

# kind → (ORM model, primary key column name)
CONTENT_MODELS = {
    POST: (Post, "post_id"),
    PRODUCT: (Product, "product_id"),
    EVENT: (Event, "event_id"),
    STORY: (Story, "story_id"),
}


class ContentStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._sessions = session_factory

    # ── Users ──────────────────────────────────────────────────────────────

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._sessions() as session:
            return await session.get(User, user_id)

    # ── Corpus ─────────────────────────────────────────────────────────────

    async def fetch_posts(self, exclude_author: Optional[str] = None, limit: Optional[int] = None) -> list[PostItem]:
        return await self._fetch(POST, exclude_author=exclude_author, limit=limit)

    async def fetch_products(self, exclude_author: Optional[str] = None, limit: Optional[int] = None) -> list[ProductItem]:
        return await self._fetch(PRODUCT, exclude_author=exclude_author, limit=limit)

    async def fetch_events(self, exclude_author: Optional[str] = None, limit: Optional[int] = None) -> list[EventItem]:
        return await self._fetch(EVENT, exclude_author=exclude_author, limit=limit)

    async def fetch_stories(self, since: datetime) -> list[StoryItem]:
        return await self._fetch(STORY, since=since)

    async def _fetch(
        self,
        kind: str,
        exclude_author: Optional[str] = None,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[ContentItem]:
        model, pk = CONTENT_MODELS[kind]
        stmt = (
            select(model, User.username, User.display_name)
            .join(User, User.user_id == model.user_id)
            .order_by(model.created_at.desc(), getattr(model, pk))
        )
        if exclude_author:
            stmt = stmt.where(model.user_id != exclude_author)
        if since is not None:
            stmt = stmt.where(model.created_at >= since)
        if limit:
            stmt = stmt.limit(limit)

        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
            ids = [getattr(row[0], pk) for row in rows]
            likers = await _likers(session, kind, ids)
            comments = await _comments(session, kind, ids)
            interested = await _interested(session, ids) if kind == EVENT else {}

        items = []
        for obj, username, display_name in rows:
            item_id = getattr(obj, pk)
            item_comments = tuple(comments.get(item_id, ()))
            common = dict(
                id=item_id,
                author_id=obj.user_id,
                author_username=username,
                author_display_name=display_name,
                created_at=obj.created_at,
                updated_at=obj.updated_at,
                shares_count=getattr(obj, "shares", 0) or 0,
                liked_by=frozenset(likers.get(item_id, ())),
                commented_by=frozenset(c.user_id for c in item_comments),
                comments=item_comments,
            )
            items.append(_build_item(kind, obj, common, interested.get(item_id, ())))
        logger.debug("Fetched %d %s items", len(items), kind)
        return items

    # ── Interest profile sources ───────────────────────────────────────────

    async def fetch_interest_texts(self, user_id: str) -> list[str]:
        """
        Texts the viewer's interest tokens are drawn from: own post contents,
        own event details+titles, own product descriptions+titles, and
        details+titles of events the viewer marked interested.
        """
        async with self._sessions() as session:
            posts = await session.execute(
                select(Post.content).where(Post.user_id == user_id)
            )
            events = await session.execute(
                select(Event.event_details, Event.event_title).where(Event.user_id == user_id)
            )
            products = await session.execute(
                select(Product.description, Product.title).where(Product.user_id == user_id)
            )
            interested = await session.execute(
                select(Event.event_details, Event.event_title)
                .join(EventInterest, EventInterest.event_id == Event.event_id)
                .where(EventInterest.user_id == user_id)
            )
            texts = [content for (content,) in posts.all()]
            texts += [f"{details} {title}" for details, title in events.all()]
            texts += [f"{description} {title}" for description, title in products.all()]
            texts += [f"{details} {title}" for details, title in interested.all()]
        return texts


def _build_item(kind: str, obj, common: dict, interested) -> ContentItem:
    if kind == POST:
        return PostItem(content=obj.content, **common)
    if kind == PRODUCT:
        return ProductItem(
            title=obj.title,
            description=obj.description or "",
            price=obj.price,
            category=obj.category or "",
            condition=obj.condition,
            status=obj.status,
            **common,
        )
    if kind == EVENT:
        return EventItem(
            event_title=obj.event_title,
            event_details=obj.event_details,
            event_date=obj.event_date,
            event_location=obj.event_location,
            interested=frozenset(interested),
            **common,
        )
    return StoryItem(text=obj.text or "", text_color=obj.text_color, **common)


async def _likers(session: AsyncSession, kind: str, ids: list[str]) -> dict[str, set[str]]:
    if not ids:
        return {}
    rows = await session.execute(
        select(Like.content_id, Like.user_id).where(
            Like.content_type == kind, Like.content_id.in_(ids)
        )
    )
    result: dict[str, set[str]] = defaultdict(set)
    for content_id, user_id in rows.all():
        result[content_id].add(user_id)
    return result


async def _comments(session: AsyncSession, kind: str, ids: list[str]) -> dict[str, list[CommentView]]:
    if not ids:
        return {}
    author = aliased(User)
    rows = await session.execute(
        select(Comment, author.username, author.display_name)
        .join(author, author.user_id == Comment.user_id)
        .where(Comment.content_type == kind, Comment.content_id.in_(ids))
        .order_by(Comment.created_at, Comment.comment_id)
    )
    result: dict[str, list[CommentView]] = defaultdict(list)
    for comment, username, display_name in rows.all():
        result[comment.content_id].append(
            CommentView(
                comment_id=comment.comment_id,
                user_id=comment.user_id,
                username=username,
                display_name=display_name,
                content=comment.content,
                parent_id=comment.parent_id,
                created_at=comment.created_at,
            )
        )
    return result


async def _interested(session: AsyncSession, ids: list[str]) -> dict[str, set[str]]:
    if not ids:
        return {}
    rows = await session.execute(
        select(EventInterest.event_id, EventInterest.user_id).where(
            EventInterest.event_id.in_(ids)
        )
    )
    result: dict[str, set[str]] = defaultdict(set)
    for event_id, user_id in rows.all():
        result[event_id].add(user_id)
    return result
