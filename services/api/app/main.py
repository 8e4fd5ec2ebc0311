"""
Social Hub API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Create tables if not present (TiDB)
  3. Connect to Redis and start the realtime relay (realtime_backend=redis)
  4. Expose Prometheus /metrics endpoint

The in-process room registry, broadcaster, presence tracker and metrics
collector live on app.state and are handed to routes through dependencies.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from prometheus_client import make_asgi_app
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.clients.redis_client import create_redis, relay_room_events
from app.config import settings
from app.database import get_session_factory, init_db, ping_db
from app.errors import register_error_handlers
from app.realtime import socket
from app.realtime.broadcaster import LocalBroadcaster, RedisBroadcaster
from app.realtime.presence import LocalPresence, RedisPresence
from app.realtime.rooms import RoomManager
from app.routers import content, feed, messages, users
from app.telemetry import MetricsCollector, install_request_metrics, instrument_app, setup_tracing

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Social Hub API (env=%s)", settings.environment)

    await init_db()

    redis = None
    relay = None
    if settings.realtime_backend == "redis":
        redis = await create_redis(settings)
        app.state.broadcaster = RedisBroadcaster(redis, settings.realtime_channel)
        app.state.presence = RedisPresence(redis, settings.realtime_presence_prefix)
        relay = asyncio.create_task(
            relay_room_events(redis, settings.realtime_channel, app.state.rooms)
        )
    logger.info("Realtime backend: %s", settings.realtime_backend)

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    if relay is not None:
        relay.cancel()
        try:
            await relay
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Realtime relay stopped with an error")
    if app.state.background_emits:
        await asyncio.gather(*app.state.background_emits, return_exceptions=True)
    if redis is not None:
        await redis.aclose()


app = FastAPI(
    title="Social Hub API",
    description=(
        "Ranked content feed, discovery suggestions and real-time one-to-one "
        "messaging."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── Shared components (swapped for Redis-backed ones in lifespan) ────────────
app.state.started_at = time.time()
app.state.rooms = RoomManager()
app.state.broadcaster = LocalBroadcaster(app.state.rooms)
app.state.presence = LocalPresence(app.state.rooms)
app.state.metrics = MetricsCollector()
app.state.background_emits = set()

register_error_handlers(app)
install_request_metrics(app)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(feed.router, prefix="/api", tags=["Feed"])
app.include_router(messages.router, prefix="/api/messages", tags=["Messages"])
app.include_router(content.router, prefix="/api", tags=["Content"])
app.include_router(socket.router, tags=["Realtime"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
# Mounted at /metrics — scraped by Prometheus
metrics_app = make_asgi_app(registry=app.state.metrics.registry)
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    database_ok = await ping_db(session_factory)
    return {
        "status": "ok" if database_ok else "degraded",
        "service": settings.service_name,
        "database": "up" if database_ok else "down",
        "uptime_seconds": round(time.time() - request.app.state.started_at, 1),
    }
