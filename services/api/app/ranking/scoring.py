"""
Content scoring engine.

Pure functions: a viewer id, their interest tokens and a flat corpus of
content items go in, a ranked list of ScoredItems comes out. No I/O.

Feed score (per item):
  recency        max(0, 1 - age_hours / 168) * 30
  engagement     likes*2 + comments*3 + shares*5 (+ interested*4 for events)
  identity       +50 own content, +30 event the viewer is interested in
  relevance      +10 per interest token found in item text + author username
  freshness      +20 for stories

Suggestion score (per item, viewer's own items excluded):
  engagement     as above
  relevance      +15 per interest token found in item text
  unexplored     +20 when the viewer has not liked, commented or shown interest

Sorting is descending and stable: equal scores keep corpus order.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from app.ranking.content import ContentItem, EventItem, StoryItem

RECENCY_WINDOW_HOURS = 168
RECENCY_WEIGHT = 30
OWN_CONTENT_BOOST = 50
INTERESTED_EVENT_BOOST = 30
FEED_RELEVANCE_WEIGHT = 10
SUGGESTION_RELEVANCE_WEIGHT = 15
STORY_BOOST = 20
UNEXPLORED_BOOST = 20

FEED_LIMIT = 50
SUGGESTION_LIMIT = 10


@dataclass(frozen=True)
class ScoredItem:
    item: ContentItem
    score: float
    is_own_content: bool = False
    is_interested: bool = False

    def to_dict(self) -> dict:
        data = self.item.to_dict()
        data["score"] = self.score
        data["isOwnContent"] = self.is_own_content
        data["isInterested"] = self.is_interested
        return data


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def recency_score(created_at: datetime, now: datetime) -> float:
    """Linear decay from 1 (just created) to 0 at 168 hours; never negative."""
    age_hours = (_naive_utc(now) - _naive_utc(created_at)).total_seconds() / 3600
    return min(1.0, max(0.0, 1 - age_hours / RECENCY_WINDOW_HOURS))


def relevance_score(text: str, interests: Iterable[str], weight: int) -> int:
    haystack = (text or "").lower()
    return sum(weight for token in interests if token in haystack)


def score_for_feed(
    item: ContentItem,
    user_id: str,
    interests: list[str],
    now: datetime,
) -> ScoredItem:
    score = recency_score(item.created_at, now) * RECENCY_WEIGHT
    score += item.engagement_score()

    is_own = item.author_id == user_id
    is_interested = isinstance(item, EventItem) and user_id in item.interested
    if is_own:
        score += OWN_CONTENT_BOOST
    if is_interested:
        score += INTERESTED_EVENT_BOOST

    text = f"{item.text_for_matching()} {item.author_username or ''}"
    score += relevance_score(text, interests, FEED_RELEVANCE_WEIGHT)

    if isinstance(item, StoryItem):
        score += STORY_BOOST

    return ScoredItem(item=item, score=score, is_own_content=is_own, is_interested=is_interested)


def score_for_suggestion(
    item: ContentItem,
    user_id: str,
    interests: list[str],
) -> ScoredItem:
    score = float(item.engagement_score())
    score += relevance_score(item.text_for_matching(), interests, SUGGESTION_RELEVANCE_WEIGHT)
    if not item.interacted_by(user_id):
        score += UNEXPLORED_BOOST
    is_interested = isinstance(item, EventItem) and user_id in item.interested
    return ScoredItem(item=item, score=score, is_own_content=False, is_interested=is_interested)


def rank_feed(
    user_id: str,
    interests: list[str],
    corpus: Iterable[ContentItem],
    now: Optional[datetime] = None,
    limit: int = FEED_LIMIT,
) -> list[ScoredItem]:
    now = now or datetime.now(timezone.utc)
    scored = [score_for_feed(item, user_id, interests, now) for item in corpus]
    return sorted(scored, key=lambda s: s.score, reverse=True)[:limit]


def rank_suggestions(
    user_id: str,
    interests: list[str],
    corpus: Iterable[ContentItem],
    limit: int = SUGGESTION_LIMIT,
) -> list[ScoredItem]:
    scored = [
        score_for_suggestion(item, user_id, interests)
        for item in corpus
        if item.author_id != user_id
    ]
    return sorted(scored, key=lambda s: s.score, reverse=True)[:limit]
