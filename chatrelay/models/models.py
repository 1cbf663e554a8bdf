# chatrelay/models/models.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field

from chatrelay.core.config import settings

SYSTEM_USER = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def avatar_url(name: str) -> str:
    """Avatar image URL for a display name."""
    return f"{settings.AVATAR_BASE_URL}?name={quote(name, safe='')}&background=random"


class MessageType(str, Enum):
    CHAT = "chat"
    JOIN = "join"
    LEAVE = "leave"
    TYPING = "typing"
    STOP_TYPING = "stop_typing"
    USER_LIST = "user_list"
    ROOM_LIST = "room_list"
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    CREATE_ROOM = "create_room"
    ROOM_JOINED = "room_joined"
    ROOM_LEFT = "room_left"
    ERROR = "error"


# Types a client is allowed to send; everything else is server-originated.
CLIENT_MESSAGE_TYPES = frozenset(
    {
        MessageType.CHAT,
        MessageType.TYPING,
        MessageType.STOP_TYPING,
        MessageType.CREATE_ROOM,
        MessageType.JOIN_ROOM,
        MessageType.LEAVE_ROOM,
    }
)


class RoomType(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    PROTECTED = "protected"


class RoomInfo(BaseModel):
    id: int
    name: str
    room_type: RoomType
    member_count: int = 0
    is_protected: bool = False


class ChatMessage(BaseModel):
    """A single frame on the wire, in either direction."""

    message_type: MessageType
    user: str = ""
    text: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    avatar: str = ""
    users: Optional[List[str]] = None
    room_id: Optional[int] = None
    rooms: Optional[List[RoomInfo]] = None
    error: Optional[str] = None

    @classmethod
    def system(cls, message_type: MessageType, text: str, **extra) -> "ChatMessage":
        return cls(
            message_type=message_type,
            user=SYSTEM_USER,
            text=text,
            avatar=avatar_url(SYSTEM_USER),
            **extra,
        )

    @classmethod
    def failure(cls, text: str, detail: str) -> "ChatMessage":
        return cls.system(MessageType.ERROR, text, error=detail)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class CreateRoomCommand(BaseModel):
    """Payload carried as JSON in the ``text`` field of a create_room frame."""

    name: str
    room_type: RoomType = RoomType.PUBLIC
    password: Optional[str] = None


class JoinRoomCommand(BaseModel):
    """Payload carried as JSON in the ``text`` field of a join_room frame."""

    room_id: int
    password: Optional[str] = None


class StoredRoom(BaseModel):
    id: int
    name: str
    room_type: RoomType = RoomType.PUBLIC
    password_hash: Optional[str] = None
    created_by: int
    created_at: datetime = Field(default_factory=utcnow)


class StoredMessage(BaseModel):
    id: int
    room_id: int
    sender_id: int
    sender_name: str
    content: str
    created_at: datetime = Field(default_factory=utcnow)
