"""
Feed aggregation.

  feed_algo        — all posts/products/events + last-24h stories, scored for
                     the viewer (own content included), top 50.
  suggest_content  — 10 most recent posts/products/events per type from other
                     authors, scored for discovery, top 10.
  get_feed         — unranked, reverse-chronological merge of posts, products
                     and events normalised for the viewer.

The four collection reads and the interest-profile read run concurrently.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from opentelemetry import trace

from app.config import settings
from app.errors import AppError, InternalError, NotFoundError, parse_id
from app.ranking.content import ContentItem, EventItem, ProductItem
from app.ranking.interests import extract_interest_tokens
from app.ranking.scoring import ScoredItem, rank_feed, rank_suggestions
from app.stores.content_store import ContentStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class FeedService:
    def __init__(self, store: ContentStore) -> None:
        self._store = store

    async def _require_user(self, raw_user_id) -> str:
        user_id = parse_id(raw_user_id, "Invalid user ID")
        if not await self._store.get_user(user_id):
            raise NotFoundError("User not found")
        return user_id

    async def interest_profile(self, user_id: str) -> list[str]:
        return extract_interest_tokens(await self._store.fetch_interest_texts(user_id))

    async def feed_algo(self, raw_user_id, now: datetime | None = None) -> list[ScoredItem]:
        user_id = await self._require_user(raw_user_id)
        now = now or datetime.now(timezone.utc).replace(tzinfo=None)

        with tracer.start_as_current_span("feed_algo") as span:
            span.set_attribute("user.id", user_id)
            try:
                since = now - timedelta(hours=settings.story_lookback_hours)
                posts, products, events, stories, interests = await asyncio.gather(
                    self._store.fetch_posts(),
                    self._store.fetch_products(),
                    self._store.fetch_events(),
                    self._store.fetch_stories(since),
                    self.interest_profile(user_id),
                )
                corpus = [*posts, *products, *events, *stories]
                ranked = rank_feed(
                    user_id, interests, corpus, now=now, limit=settings.feed_page_size
                )
            except AppError:
                raise
            except Exception as exc:
                logger.exception("Error generating feed for %s", user_id)
                raise InternalError("Server error generating feed") from exc

            span.set_attribute("feed.corpus_size", len(corpus))
            span.set_attribute("feed.interest_tokens", len(interests))
            span.set_attribute("feed.items_returned", len(ranked))
        return ranked

    async def suggest_content(self, raw_user_id) -> list[ScoredItem]:
        user_id = await self._require_user(raw_user_id)

        with tracer.start_as_current_span("suggest_content") as span:
            span.set_attribute("user.id", user_id)
            try:
                per_type = settings.suggestion_candidates_per_type
                posts, products, events, interests = await asyncio.gather(
                    self._store.fetch_posts(exclude_author=user_id, limit=per_type),
                    self._store.fetch_products(exclude_author=user_id, limit=per_type),
                    self._store.fetch_events(exclude_author=user_id, limit=per_type),
                    self.interest_profile(user_id),
                )
                ranked = rank_suggestions(
                    user_id,
                    interests,
                    [*posts, *products, *events],
                    limit=settings.suggestion_page_size,
                )
            except AppError:
                raise
            except Exception as exc:
                logger.exception("Error generating suggestions for %s", user_id)
                raise InternalError("Server error generating suggestions") from exc

            span.set_attribute("feed.items_returned", len(ranked))
        return ranked

    async def get_feed(self, viewer_id: str) -> list[dict]:
        posts, products, events = await asyncio.gather(
            self._store.fetch_posts(),
            self._store.fetch_products(),
            self._store.fetch_events(),
        )
        merged = [*posts, *products, *events]
        merged.sort(key=lambda item: item.created_at, reverse=True)
        if not merged:
            raise NotFoundError("No items found for the feed.")
        return [normalize_for_viewer(item, viewer_id) for item in merged]


def normalize_for_viewer(item: ContentItem, viewer_id: str) -> dict:
    """Flatten an item into the shape the simple feed view renders."""
    data = {
        "id": item.id,
        "type": item.type,
        "likes": item.likes_count,
        "liked": viewer_id in item.liked_by,
        "shares": item.shares_count,
        "comments": [c.to_dict() for c in item.comments],
        "user": {
            "id": item.author_id,
            "username": item.author_username,
            "displayName": item.author_display_name,
        },
        "createdAt": item.created_at.isoformat(),
        "updatedAt": item.updated_at.isoformat() if item.updated_at else None,
    }
    if isinstance(item, ProductItem):
        data.update(
            title=item.title,
            content=item.description,
            price=item.price,
            category=item.category,
            condition=item.condition,
            status=item.status,
        )
    elif isinstance(item, EventItem):
        # Interest doubles as the like signal for events
        data.update(
            eventTitle=item.event_title,
            content=item.event_details,
            eventDate=item.event_date.isoformat() if item.event_date else None,
            eventLocation=item.event_location,
            likes=item.interested_count,
            liked=viewer_id in item.interested,
            interested=item.interested_count,
            isInterested=viewer_id in item.interested,
        )
    else:
        data["content"] = item.text_for_matching()
    return data
