# chatrelay/services/store.py

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from chatrelay.core.errors import StoreError
from chatrelay.models.models import RoomType, StoredMessage, StoredRoom, utcnow


# ============================================================================
# PERSISTENCE CONTRACT
# ============================================================================

class ChatStore(ABC):
    """
    Persistence collaborator for users, rooms, memberships and messages.

    The relay core never holds its registry lock while awaiting any of these
    calls. Every implementation raises StoreError on failure so callers can
    degrade instead of crashing.
    """

    async def connect(self) -> None:
        """Open connections to the backend (no-op by default)."""

    async def close(self) -> None:
        """Release backend connections (no-op by default)."""

    @abstractmethod
    async def create_user(self, name: str) -> int:
        """Create a user and return its id. Raises StoreError if the name is taken."""

    @abstractmethod
    async def find_user_by_name(self, name: str) -> Optional[int]:
        ...

    @abstractmethod
    async def get_user_name(self, user_id: int) -> Optional[str]:
        ...

    @abstractmethod
    async def create_room(
        self,
        name: str,
        room_type: RoomType,
        password_hash: Optional[str],
        creator_id: int,
    ) -> int:
        ...

    @abstractmethod
    async def list_rooms(self) -> List[StoredRoom]:
        ...

    @abstractmethod
    async def join_room(self, room_id: int, user_id: int, role: str = "member") -> None:
        """Record a membership. Re-joining keeps the first recorded role."""

    @abstractmethod
    async def save_message(self, room_id: int, user_id: int, text: str) -> int:
        ...

    @abstractmethod
    async def get_room_messages(self, room_id: int, limit: int) -> List[StoredMessage]:
        """Return up to ``limit`` of the most recent messages, oldest first."""


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class MemoryChatStore(ChatStore):
    """
    Process-local store backed by plain dicts.

    Used when STORE_BACKEND=memory and throughout the tests. Data does not
    survive a restart.
    """

    def __init__(self) -> None:
        self.users: Dict[int, str] = {}
        self.user_ids: Dict[str, int] = {}
        self.rooms: Dict[int, StoredRoom] = {}
        self.members: Dict[int, Dict[int, str]] = {}
        self.messages: Dict[int, List[StoredMessage]] = {}
        self._user_seq = itertools.count(1)
        self._room_seq = itertools.count(1)
        self._message_seq = itertools.count(1)

    async def create_user(self, name: str) -> int:
        if name in self.user_ids:
            raise StoreError(f"User {name!r} already exists")
        user_id = next(self._user_seq)
        self.users[user_id] = name
        self.user_ids[name] = user_id
        return user_id

    async def find_user_by_name(self, name: str) -> Optional[int]:
        return self.user_ids.get(name)

    async def get_user_name(self, user_id: int) -> Optional[str]:
        return self.users.get(user_id)

    async def create_room(self, name, room_type, password_hash, creator_id) -> int:
        room = StoredRoom(
            id=next(self._room_seq),
            name=name,
            room_type=room_type,
            password_hash=password_hash,
            created_by=creator_id,
        )
        self.rooms[room.id] = room
        return room.id

    async def list_rooms(self) -> List[StoredRoom]:
        return sorted(self.rooms.values(), key=lambda r: r.id)

    async def join_room(self, room_id: int, user_id: int, role: str = "member") -> None:
        if room_id not in self.rooms:
            raise StoreError(f"Room {room_id} does not exist")
        self.members.setdefault(room_id, {}).setdefault(user_id, role)

    async def save_message(self, room_id: int, user_id: int, text: str) -> int:
        if room_id not in self.rooms:
            raise StoreError(f"Room {room_id} does not exist")
        message = StoredMessage(
            id=next(self._message_seq),
            room_id=room_id,
            sender_id=user_id,
            sender_name=self.users.get(user_id, f"User_{user_id}"),
            content=text,
            created_at=utcnow(),
        )
        self.messages.setdefault(room_id, []).append(message)
        return message.id

    async def get_room_messages(self, room_id: int, limit: int) -> List[StoredMessage]:
        if limit <= 0:
            return []
        return list(self.messages.get(room_id, [])[-limit:])

