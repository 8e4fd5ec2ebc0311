"""
Room presence.

A user counts as present in a room while at least one of their connections is
joined to it. This is only used to pick a message's initial delivery status,
so an approximation is acceptable.
"""
from typing import Protocol

from fastapi import Request
import redis.asyncio as aioredis

from app.realtime.rooms import RoomManager


class PresenceTracker(Protocol):
    async def mark_joined(self, user_id: str, room: str) -> None: ...

    async def mark_left(self, user_id: str, room: str) -> None: ...

    async def is_present(self, user_id: str, room: str) -> bool: ...


def get_presence(request: Request) -> PresenceTracker:
    return request.app.state.presence


class LocalPresence:
    """Presence read straight from this process's room registry."""

    def __init__(self, rooms: RoomManager) -> None:
        self._rooms = rooms

    async def mark_joined(self, user_id: str, room: str) -> None:
        return None

    async def mark_left(self, user_id: str, room: str) -> None:
        return None

    async def is_present(self, user_id: str, room: str) -> bool:
        return self._rooms.is_user_in_room(user_id, room)


class RedisPresence:
    """
    Presence shared across API workers.

    HASH keyed by presence:<room>, field = user_id, value = number of that
    user's connections joined to the room.
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = "presence") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, room: str) -> str:
        return f"{self._prefix}:{room}"

    async def mark_joined(self, user_id: str, room: str) -> None:
        await self._redis.hincrby(self._key(room), user_id, 1)

    async def mark_left(self, user_id: str, room: str) -> None:
        key = self._key(room)
        remaining = await self._redis.hincrby(key, user_id, -1)
        if remaining <= 0:
            await self._redis.hdel(key, user_id)

    async def is_present(self, user_id: str, room: str) -> bool:
        count = await self._redis.hget(self._key(room), user_id)
        return bool(count) and int(count) > 0
