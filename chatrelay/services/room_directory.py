# chatrelay/services/room_directory.py

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from chatrelay.models.models import RoomInfo, RoomType, StoredRoom
from chatrelay.services.connection_registry import ConnectionRegistry

logger = logging.getLogger(__name__)


@dataclass
class Room:
    id: int
    name: str
    room_type: RoomType
    created_by: int
    password_hash: Optional[str] = None
    # user_id -> role; the durable side of membership
    roster: Dict[int, str] = field(default_factory=dict)
    # connection ids currently in the room
    members: Set[int] = field(default_factory=set)

    @property
    def persisted(self) -> bool:
        return self.id > 0

    @property
    def is_protected(self) -> bool:
        return self.password_hash is not None

    def info(self) -> RoomInfo:
        return RoomInfo(
            id=self.id,
            name=self.name,
            room_type=self.room_type,
            member_count=len(self.members),
            is_protected=self.is_protected,
        )


# ============================================================================
# ROOM DIRECTORY
# ============================================================================

class RoomDirectory:
    """
    Room metadata plus live membership, keyed on registry connection ids.

    Every mutation runs under the registry's lock and updates both the
    room's member set and the Connection's ``room_id`` together, so the two
    views can never disagree.

    Room names are not unique: two rooms called "general" are two rooms.
    Emptying a room clears its live member set but keeps its metadata.

    Ids:
        Rooms persisted by the store carry the store's (positive) id. Rooms
        created while the store is unavailable get transient negative ids,
        which can never collide with a later storage-issued id.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        self.rooms: Dict[int, Room] = {}
        self._transient_ids = itertools.count(-1, -1)

    async def create_room(
        self,
        name: str,
        room_type: RoomType,
        password_hash: Optional[str],
        creator_id: int,
        room_id: Optional[int] = None,
    ) -> int:
        """
        Register a new room and add its creator to the roster as admin.

        Args:
            name: Room name (duplicates allowed)
            room_type: public, private or protected
            password_hash: Stored for protected rooms, never verified here
            creator_id: User id of the creator
            room_id: Id issued by the store; omitted when persistence failed

        Returns:
            The room id
        """
        async with self.registry.lock:
            if room_id is None:
                room_id = next(self._transient_ids)
            room = Room(
                id=room_id,
                name=name,
                room_type=RoomType(room_type),
                created_by=creator_id,
                password_hash=password_hash,
            )
            room.roster[creator_id] = "admin"
            self.rooms[room_id] = room

        logger.info("✓ Created room '%s' (#%d) by user %s", name, room_id, creator_id)
        return room_id

    async def load(self, stored_rooms: Iterable[StoredRoom]) -> int:
        """Register persisted rooms that the directory does not know yet."""
        added = 0
        async with self.registry.lock:
            for stored in stored_rooms:
                if stored.id in self.rooms:
                    continue
                room = Room(
                    id=stored.id,
                    name=stored.name,
                    room_type=RoomType(stored.room_type),
                    created_by=stored.created_by,
                    password_hash=stored.password_hash,
                )
                room.roster[stored.created_by] = "admin"
                self.rooms[stored.id] = room
                added += 1
        if added:
            logger.info("✓ Loaded %d rooms from storage", added)
        return added

    async def join(self, room_id: int, connection_id: int, role: str = "member") -> bool:
        """
        Add a connection to a room's live member set.

        Idempotent. A connection sitting in another room is removed from it
        first, so it is never a member of two rooms at once.

        Returns:
            False if the room is unknown or the connection already closed
        """
        async with self.registry.lock:
            room = self.rooms.get(room_id)
            connection = self.registry.get(connection_id)
            if room is None or connection is None:
                return False

            if connection.room_id is not None and connection.room_id != room_id:
                self._discard(connection.room_id, connection_id)

            room.members.add(connection_id)
            connection.room_id = room_id
            if connection.user_id is not None:
                room.roster.setdefault(connection.user_id, role)
            member_count = len(room.members)

        logger.info("→ %s joined '%s' (%d members)", connection.name, room.name, member_count)
        return True

    async def leave(self, room_id: int, connection_id: int) -> bool:
        """Remove a connection from a room. Idempotent; returns whether it was a member."""
        async with self.registry.lock:
            removed = self._discard(room_id, connection_id)
            connection = self.registry.get(connection_id)
            if connection is not None and connection.room_id == room_id:
                connection.room_id = None

        if removed:
            logger.info("← #%d left room #%d", connection_id, room_id)
        return removed

    def _discard(self, room_id: int, connection_id: int) -> bool:
        room = self.rooms.get(room_id)
        if room is None or connection_id not in room.members:
            return False
        room.members.discard(connection_id)
        return True

    def members(self, room_id: int) -> Set[int]:
        room = self.rooms.get(room_id)
        return set(room.members) if room else set()

    def get_room(self, room_id: int) -> Optional[Room]:
        return self.rooms.get(room_id)

    def list_rooms(self) -> List[Room]:
        return sorted(self.rooms.values(), key=lambda r: (r.id < 0, abs(r.id)))

    def room_infos(self) -> List[RoomInfo]:
        return [room.info() for room in self.list_rooms()]
