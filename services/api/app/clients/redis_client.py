"""
Redis client wrapper for the realtime layer.

Responsibilities:
  • Room fan-out   — PUBLISH on settings.realtime_channel
                      message = {"room", "event", "data"} (JSON)
  • Presence       — HASH keyed by presence:{room}
                      field = user_id, value = joined connection count

Each API worker subscribes to the channel and relays events to the sockets
it holds locally, so a message sent through worker A reaches a client
connected to worker B.
"""
import asyncio
import json
import logging

import redis.asyncio as aioredis

from app.config import Settings
from app.realtime.rooms import RoomManager

logger = logging.getLogger(__name__)

RELAY_RETRY_SECONDS = 1.0
RELAY_MAX_RETRY_SECONDS = 30.0


async def create_redis(settings: Settings) -> aioredis.Redis:
    client = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        decode_responses=True,
    )
    await client.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)
    return client


async def relay_room_events(
    redis: aioredis.Redis,
    channel: str,
    rooms: RoomManager,
    retry_seconds: float = RELAY_RETRY_SECONDS,
) -> None:
    """
    Forward published room events to this process's connections until cancelled.

    A dropped subscription is logged and re-established with exponential
    backoff capped at RELAY_MAX_RETRY_SECONDS.
    """
    delay = retry_seconds
    while True:
        pubsub = redis.pubsub()
        try:
            await pubsub.subscribe(channel)
            logger.info("Realtime relay subscribed to '%s'", channel)
            delay = retry_seconds
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    envelope = json.loads(message["data"])
                    await rooms.emit(envelope["room"], envelope["event"], envelope["data"])
                except Exception as exc:
                    logger.error("Realtime relay error for %r: %s", message.get("data"), exc)
            logger.warning("Realtime relay subscription to '%s' ended", channel)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Realtime relay lost its subscription to '%s'", channel)
        finally:
            await _close_pubsub(pubsub, channel)

        logger.info("Realtime relay reconnecting in %.1fs", delay)
        await asyncio.sleep(delay)
        delay = min(delay * 2, RELAY_MAX_RETRY_SECONDS)


async def _close_pubsub(pubsub, channel: str) -> None:
    try:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
    except Exception as exc:
        logger.warning("Realtime relay cleanup for '%s' failed: %s", channel, exc)
