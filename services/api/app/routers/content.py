"""
Content write endpoints (author = caller):

  POST /posts | /products | /events | /stories   — create an item
  POST /{collection}/{id}/like                    — toggle the caller's like
  POST /{collection}/{id}/comments                — comment, or reply with parentId
  POST /{collection}/{id}/share                   — increment the share counter
  POST /events/{id}/interested                    — toggle the caller's interest

These feed the engagement signals the ranker reads.
"""
import logging
from datetime import timezone

from fastapi import APIRouter, Depends, status
from opentelemetry import trace
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import AuthContext, get_auth_context
from app.database import get_db
from app.errors import NotFoundError, ValidationError, parse_id
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
from app.ranking.content import CommentView
from app.schemas import (
    CommentCreate,
    ContentCreated,
    EventCreate,
    PostCreate,
    ProductCreate,
    StoryCreate,
    ToggleResponse,
)
from app.stores.content_store import CONTENT_MODELS

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)

# URL collection → content kind
COLLECTIONS = {
    "posts": POST,
    "products": PRODUCT,
    "events": EVENT,
    "stories": STORY,
}


async def _require_author(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


async def _persist(db: AsyncSession, kind: str, obj) -> ContentCreated:
    db.add(obj)
    await db.flush()
    _, pk = CONTENT_MODELS[kind]
    logger.info("Created %s %s by %s", kind, getattr(obj, pk), obj.user_id)
    return ContentCreated(
        id=getattr(obj, pk), type=kind, user_id=obj.user_id, created_at=obj.created_at
    )


async def _load_item(db: AsyncSession, collection: str, raw_id: str):
    kind = COLLECTIONS.get(collection)
    if kind is None:
        raise NotFoundError("Not found")
    item_id = parse_id(raw_id, f"Invalid {kind} ID")
    model, _ = CONTENT_MODELS[kind]
    obj = await db.get(model, item_id)
    if not obj:
        raise NotFoundError(f"{kind.capitalize()} not found")
    return kind, item_id, obj


# ── Create ─────────────────────────────────────────────────────────────────

@router.post("/posts", response_model=ContentCreated, status_code=status.HTTP_201_CREATED)
async def create_post(
    body: PostCreate,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _require_author(db, auth.user_id)
    return await _persist(db, POST, Post(user_id=auth.user_id, content=body.content))


@router.post("/products", response_model=ContentCreated, status_code=status.HTTP_201_CREATED)
async def create_product(
    body: ProductCreate,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _require_author(db, auth.user_id)
    return await _persist(db, PRODUCT, Product(user_id=auth.user_id, **body.model_dump()))


@router.post("/events", response_model=ContentCreated, status_code=status.HTTP_201_CREATED)
async def create_event(
    body: EventCreate,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _require_author(db, auth.user_id)
    fields = body.model_dump()
    # Stored as naive UTC like every other timestamp
    if fields["event_date"].tzinfo is not None:
        fields["event_date"] = fields["event_date"].astimezone(timezone.utc).replace(tzinfo=None)
    return await _persist(db, EVENT, Event(user_id=auth.user_id, **fields))


@router.post("/stories", response_model=ContentCreated, status_code=status.HTTP_201_CREATED)
async def create_story(
    body: StoryCreate,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _require_author(db, auth.user_id)
    return await _persist(db, STORY, Story(user_id=auth.user_id, **body.model_dump()))


# ── Engagement ─────────────────────────────────────────────────────────────

@router.post("/{collection}/{item_id}/like", response_model=ToggleResponse)
async def toggle_like(
    collection: str,
    item_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    kind, item_id, _ = await _load_item(db, collection, item_id)
    with tracer.start_as_current_span("toggle_like"):
        existing = await db.get(Like, (auth.user_id, kind, item_id))
        if existing:
            await db.delete(existing)
        else:
            db.add(Like(user_id=auth.user_id, content_type=kind, content_id=item_id))
        await db.flush()
        count = await db.scalar(
            select(func.count())
            .select_from(Like)
            .where(Like.content_type == kind, Like.content_id == item_id)
        )
    return ToggleResponse(id=item_id, type=kind, active=not existing, count=count)


@router.post("/{collection}/{item_id}/comments", status_code=status.HTTP_201_CREATED)
async def add_comment(
    collection: str,
    item_id: str,
    body: CommentCreate,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    kind, item_id, _ = await _load_item(db, collection, item_id)
    user = await _require_author(db, auth.user_id)

    parent_id = None
    if body.parent_id:
        parent_id = parse_id(body.parent_id, "Invalid parent comment ID")
        parent = await db.get(Comment, parent_id)
        # Replies must stay on the same item
        if not parent or parent.content_type != kind or parent.content_id != item_id:
            raise ValidationError("Parent comment not found on this item")

    comment = Comment(
        content_type=kind,
        content_id=item_id,
        user_id=user.user_id,
        parent_id=parent_id,
        content=body.content,
    )
    db.add(comment)
    await db.flush()
    return CommentView(
        comment_id=comment.comment_id,
        user_id=user.user_id,
        username=user.username,
        display_name=user.display_name,
        content=comment.content,
        parent_id=comment.parent_id,
        created_at=comment.created_at,
    ).to_dict()


@router.post("/{collection}/{item_id}/share", response_model=ToggleResponse)
async def share_item(
    collection: str,
    item_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    kind, item_id, obj = await _load_item(db, collection, item_id)
    if kind == STORY:
        raise ValidationError("Stories cannot be shared")
    model, pk = CONTENT_MODELS[kind]
    await db.execute(
        update(model)
        .where(getattr(model, pk) == item_id)
        .values(shares=model.shares + 1)
    )
    await db.refresh(obj, attribute_names=["shares"])
    return ToggleResponse(id=item_id, type=kind, active=True, count=obj.shares)


@router.post("/events/{event_id}/interested", response_model=ToggleResponse)
async def toggle_interested(
    event_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    _, event_id, _ = await _load_item(db, "events", event_id)
    await _require_author(db, auth.user_id)
    existing = await db.get(EventInterest, (auth.user_id, event_id))
    if existing:
        await db.delete(existing)
    else:
        db.add(EventInterest(user_id=auth.user_id, event_id=event_id))
    await db.flush()
    count = await db.scalar(
        select(func.count())
        .select_from(EventInterest)
        .where(EventInterest.event_id == event_id)
    )
    return ToggleResponse(id=event_id, type=EVENT, active=not existing, count=count)
