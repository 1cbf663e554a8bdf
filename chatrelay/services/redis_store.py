# chatrelay/services/redis_store.py

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from chatrelay.core.errors import StoreError
from chatrelay.models.models import RoomType, StoredMessage, StoredRoom, utcnow
from chatrelay.services.store import ChatStore

logger = logging.getLogger(__name__)

# ============================================================================
# REDIS-BACKED STORE
# ============================================================================

class RedisChatStore(ChatStore):
    """
    Persist users, rooms and messages in Redis.

    Key layout (``chat`` is the default prefix):
        chat:seq:{user,room,message}   INCR counters for ids
        chat:users                     hash  name -> user id
        chat:user:<id>                 string display name
        chat:rooms                     zset  room ids, scored by id
        chat:room:<id>                 hash  room metadata
        chat:room:<id>:members         hash  user id -> role
        chat:room:<id>:messages        list  JSON messages, appended (oldest first)
    """

    def __init__(self, url: str, prefix: str = "chat") -> None:
        self.url = url
        self.prefix = prefix
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish async connection to Redis."""
        self.client = redis.from_url(self.url, decode_responses=True)
        async with self._guard("connect"):
            await self.client.ping()
        logger.info("✓ Connected to Redis store (prefix=%s)", self.prefix)

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None
        logger.info("Redis store connection closed")

    def _key(self, *parts) -> str:
        return ":".join([self.prefix, *(str(p) for p in parts)])

    @asynccontextmanager
    async def _guard(self, operation: str):
        if self.client is None:
            raise StoreError(f"Redis store not connected ({operation})")
        try:
            yield
        except RedisError as e:
            logger.error("Redis %s failed: %s", operation, e)
            raise StoreError(f"{operation} failed: {e}") from e

    # ---- users ------------------------------------------------------------

    async def create_user(self, name: str) -> int:
        async with self._guard("create_user"):
            user_id = await self.client.incr(self._key("seq", "user"))
            # HSETNX makes the name claim atomic across relay instances
            claimed = await self.client.hsetnx(self._key("users"), name, user_id)
            if not claimed:
                raise StoreError(f"User {name!r} already exists")
            await self.client.set(self._key("user", user_id), name)
        return int(user_id)

    async def find_user_by_name(self, name: str) -> Optional[int]:
        async with self._guard("find_user_by_name"):
            value = await self.client.hget(self._key("users"), name)
        return int(value) if value is not None else None

    async def get_user_name(self, user_id: int) -> Optional[str]:
        async with self._guard("get_user_name"):
            return await self.client.get(self._key("user", user_id))

    # ---- rooms ------------------------------------------------------------

    async def create_room(self, name, room_type, password_hash, creator_id) -> int:
        async with self._guard("create_room"):
            room_id = int(await self.client.incr(self._key("seq", "room")))
            room = StoredRoom(
                id=room_id,
                name=name,
                room_type=room_type,
                password_hash=password_hash,
                created_by=creator_id,
            )
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(
                    self._key("room", room_id),
                    mapping={
                        "id": room.id,
                        "name": room.name,
                        "room_type": RoomType(room.room_type).value,
                        "password_hash": room.password_hash or "",
                        "created_by": room.created_by,
                        "created_at": room.created_at.isoformat(),
                    },
                )
                pipe.zadd(self._key("rooms"), {room_id: room_id})
                await pipe.execute()
        return room_id

    async def list_rooms(self) -> List[StoredRoom]:
        async with self._guard("list_rooms"):
            room_ids = await self.client.zrange(self._key("rooms"), 0, -1)
            async with self.client.pipeline(transaction=False) as pipe:
                for room_id in room_ids:
                    pipe.hgetall(self._key("room", room_id))
                rows = await pipe.execute()

        rooms = []
        for row in rows:
            if not row:
                continue
            rooms.append(
                StoredRoom(
                    id=int(row["id"]),
                    name=row["name"],
                    room_type=row.get("room_type", RoomType.PUBLIC.value),
                    password_hash=row.get("password_hash") or None,
                    created_by=int(row["created_by"]),
                    created_at=row.get("created_at") or utcnow(),
                )
            )
        return rooms

    async def join_room(self, room_id: int, user_id: int, role: str = "member") -> None:
        async with self._guard("join_room"):
            if not await self.client.exists(self._key("room", room_id)):
                raise StoreError(f"Room {room_id} does not exist")
            await self.client.hsetnx(self._key("room", room_id, "members"), user_id, role)

    # ---- messages ---------------------------------------------------------

    async def save_message(self, room_id: int, user_id: int, text: str) -> int:
        async with self._guard("save_message"):
            if not await self.client.exists(self._key("room", room_id)):
                raise StoreError(f"Room {room_id} does not exist")
            message_id = int(await self.client.incr(self._key("seq", "message")))
            sender_name = await self.client.get(self._key("user", user_id))
            message = StoredMessage(
                id=message_id,
                room_id=room_id,
                sender_id=user_id,
                sender_name=sender_name or f"User_{user_id}",
                content=text,
            )
            await self.client.rpush(self._key("room", room_id, "messages"), message.model_dump_json())
        return message_id

    async def get_room_messages(self, room_id: int, limit: int) -> List[StoredMessage]:
        if limit <= 0:
            return []
        async with self._guard("get_room_messages"):
            raw = await self.client.lrange(self._key("room", room_id, "messages"), -limit, -1)
        return [StoredMessage.model_validate_json(item) for item in raw]
