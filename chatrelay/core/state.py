# chatrelay/core/state.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from chatrelay.core.config import Settings
from chatrelay.services.connection_registry import ConnectionRegistry
from chatrelay.services.identity import IdentityResolver
from chatrelay.services.message_router import MessageRouter
from chatrelay.services.redis_store import RedisChatStore
from chatrelay.services.room_directory import RoomDirectory
from chatrelay.services.store import ChatStore, MemoryChatStore

# Global singletons for app state, populated on startup so every asyncio
# primitive is created inside the serving event loop.
store: Optional[ChatStore] = None
registry: Optional[ConnectionRegistry] = None
room_directory: Optional[RoomDirectory] = None
identity_resolver: Optional[IdentityResolver] = None
message_router: Optional[MessageRouter] = None

app_start_time: datetime = datetime.now(timezone.utc)


def build_store(settings: Settings) -> ChatStore:
    """Pick the store implementation named by STORE_BACKEND."""
    if settings.STORE_BACKEND == "redis":
        return RedisChatStore(url=settings.redis_url, prefix=settings.REDIS_KEY_PREFIX)
    return MemoryChatStore()


def init(new_store: ChatStore, history_limit: int = 50) -> None:
    """Wire the relay core around ``new_store``, replacing any previous state."""
    global store, registry, room_directory, identity_resolver, message_router, app_start_time

    store = new_store
    registry = ConnectionRegistry()
    room_directory = RoomDirectory(registry)
    identity_resolver = IdentityResolver(store)
    message_router = MessageRouter(registry, room_directory, store, history_limit=history_limit)
    app_start_time = datetime.now(timezone.utc)
