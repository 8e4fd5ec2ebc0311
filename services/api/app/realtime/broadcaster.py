"""
Broadcasters: the capability services use to push an event to a room.

  LocalBroadcaster — sends straight to this process's connections.
  RedisBroadcaster — publishes to a Redis channel; every API worker runs a
                     relay (clients.redis_client.relay_room_events) that
                     forwards to its own connections.
"""
import json
import logging
from typing import Protocol

from fastapi import Request
import redis.asyncio as aioredis

from app.realtime.rooms import RoomManager

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    async def emit_to_room(self, room: str, event: str, payload: dict) -> None: ...


def get_broadcaster(request: Request) -> Broadcaster:
    return request.app.state.broadcaster


class LocalBroadcaster:
    def __init__(self, rooms: RoomManager) -> None:
        self._rooms = rooms

    async def emit_to_room(self, room: str, event: str, payload: dict) -> None:
        delivered = await self._rooms.emit(room, event, payload)
        logger.debug("Emitted %s to %s (%d connections)", event, room, delivered)


class RedisBroadcaster:
    def __init__(self, redis: aioredis.Redis, channel: str) -> None:
        self._redis = redis
        self._channel = channel

    async def emit_to_room(self, room: str, event: str, payload: dict) -> None:
        envelope = {"room": room, "event": event, "data": payload}
        await self._redis.publish(self._channel, json.dumps(envelope, default=str))
