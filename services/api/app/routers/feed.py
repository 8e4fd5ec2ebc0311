"""
Feed endpoints:

  POST /feed              — ranked feed for body.user_id (top 50, own content included)
  POST /suggest-content   — discovery suggestions for body.user_id (top 10, others only)
  GET  /feed              — unranked reverse-chronological feed for the caller

Ranking itself is pure (app.ranking.scoring); this layer only wires the
store, records latency and shapes the response.
"""
import logging
import time

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.auth import AuthContext, get_auth_context
from app.database import get_session_factory
from app.schemas import FeedRequest, FeedResponse
from app.services.feed_service import FeedService
from app.stores.content_store import ContentStore
from app.telemetry import MetricsCollector, get_metrics

logger = logging.getLogger(__name__)
router = APIRouter()


def get_feed_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> FeedService:
    return FeedService(ContentStore(session_factory))


@router.post("/feed", response_model=FeedResponse)
async def feed_algo(
    body: FeedRequest,
    auth: AuthContext = Depends(get_auth_context),
    service: FeedService = Depends(get_feed_service),
    metrics: MetricsCollector = Depends(get_metrics),
):
    t0 = time.perf_counter()
    ranked = await service.feed_algo(body.user_id)
    metrics.feed_latency.labels(algorithm="ranked").observe(time.perf_counter() - t0)
    metrics.feed_items.labels(algorithm="ranked").inc(len(ranked))
    return FeedResponse(
        message="Feed generated successfully",
        data=[item.to_dict() for item in ranked],
    )


@router.post("/suggest-content", response_model=FeedResponse)
async def suggest_content(
    body: FeedRequest,
    auth: AuthContext = Depends(get_auth_context),
    service: FeedService = Depends(get_feed_service),
    metrics: MetricsCollector = Depends(get_metrics),
):
    t0 = time.perf_counter()
    ranked = await service.suggest_content(body.user_id)
    metrics.feed_latency.labels(algorithm="suggestions").observe(time.perf_counter() - t0)
    metrics.feed_items.labels(algorithm="suggestions").inc(len(ranked))
    return FeedResponse(
        message="Content suggestions generated successfully",
        data=[item.to_dict() for item in ranked],
    )


@router.get("/feed")
async def get_feed(
    auth: AuthContext = Depends(get_auth_context),
    service: FeedService = Depends(get_feed_service),
    metrics: MetricsCollector = Depends(get_metrics),
):
    t0 = time.perf_counter()
    items = await service.get_feed(auth.user_id)
    metrics.feed_latency.labels(algorithm="chronological").observe(time.perf_counter() - t0)
    metrics.feed_items.labels(algorithm="chronological").inc(len(items))
    return items
