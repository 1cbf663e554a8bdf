# chatrelay/services/message_router.py

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Type, TypeVar

from pydantic import BaseModel, ValidationError

from chatrelay.core.errors import (
    IdentityRequiredError,
    InvalidFrameError,
    RoomNotFoundError,
    StoreError,
)
from chatrelay.models.models import (
    CLIENT_MESSAGE_TYPES,
    ChatMessage,
    CreateRoomCommand,
    JoinRoomCommand,
    MessageType,
    RoomType,
    avatar_url,
    utcnow,
)
from chatrelay.services.connection_registry import ConnectionRegistry
from chatrelay.services.passwords import hash_password
from chatrelay.services.room_directory import Room, RoomDirectory
from chatrelay.services.store import ChatStore

if TYPE_CHECKING:
    from chatrelay.services.session import ChatSession

logger = logging.getLogger(__name__)

CommandT = TypeVar("CommandT", bound=BaseModel)
Handler = Callable[["ChatSession", ChatMessage], Awaitable[None]]

# ============================================================================
# MESSAGE ROUTER
# ============================================================================

class MessageRouter:
    """
    Classify inbound frames and fan them out.

    Routing:
        chat                 room members when in a room, else everyone;
                             persisted when in a room and identified
        typing / stop_typing everyone except the sending connection
        create_room          ack to sender, refreshed room list to everyone
        join_room            room_joined to room members, history to sender
        leave_room           room_left to former room members

    Anything else (bad JSON, unknown or server-only message_type, a command
    payload that does not parse) is logged and dropped. The connection stays
    open.

    Persistence failures never undo the in-memory effect; the sender gets an
    ``error`` frame describing what was not saved.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        directory: RoomDirectory,
        store: ChatStore,
        history_limit: int = 50,
    ) -> None:
        self.registry = registry
        self.directory = directory
        self.store = store
        self.history_limit = history_limit
        self.messages_relayed = 0
        self.frames_dropped = 0

        self.handlers: Dict[MessageType, Handler] = {
            MessageType.CHAT: self._on_chat,
            MessageType.TYPING: self._on_typing,
            MessageType.STOP_TYPING: self._on_typing,
            MessageType.CREATE_ROOM: self._on_create_room,
            MessageType.JOIN_ROOM: self._on_join_room,
            MessageType.LEAVE_ROOM: self._on_leave_room,
        }

    # ---- parsing ----------------------------------------------------------

    @staticmethod
    def parse(text: str) -> ChatMessage:
        try:
            frame = ChatMessage.model_validate_json(text)
        except ValidationError as e:
            raise InvalidFrameError(f"invalid frame: {e.error_count()} validation error(s)") from e
        if frame.message_type not in CLIENT_MESSAGE_TYPES:
            raise InvalidFrameError(f"clients may not send {frame.message_type.value!r} frames")
        return frame

    @staticmethod
    def _command(model: Type[CommandT], text: str) -> CommandT:
        try:
            return model.model_validate_json(text)
        except ValidationError as e:
            raise InvalidFrameError(f"invalid {model.__name__}: {text!r}") from e

    # ---- entry point ------------------------------------------------------

    async def route(self, session: "ChatSession", text: str) -> None:
        try:
            frame = self.parse(text)
        except InvalidFrameError as e:
            self.frames_dropped += 1
            logger.warning("Dropping frame from %s: %s", session.name, e)
            return

        # The server is the authority on who sent what, and when
        frame.user = session.name
        frame.timestamp = utcnow()
        frame.avatar = avatar_url(session.name)

        logger.debug("Routing %s from %s", frame.message_type.value, session.name)
        try:
            await self.handlers[frame.message_type](session, frame)
        except InvalidFrameError as e:
            self.frames_dropped += 1
            logger.warning("Dropping %s from %s: %s", frame.message_type.value, session.name, e)
        except IdentityRequiredError as e:
            session.send(ChatMessage.failure(f"Cannot {frame.message_type.value.replace('_', ' ')}", str(e)))
        except RoomNotFoundError as e:
            session.send(ChatMessage.failure("Failed to join room", str(e)))

    # ---- handlers ---------------------------------------------------------

    async def _on_chat(self, session: "ChatSession", frame: ChatMessage) -> None:
        room_id = session.room_id
        frame.room_id = room_id
        wire = frame.to_wire()

        if room_id is None:
            delivered = self.registry.broadcast(wire)
        else:
            delivered = 0
            for connection_id in self.directory.members(room_id):
                delivered += self.registry.deliver(connection_id, wire)
        self.messages_relayed += 1
        logger.debug("📨 chat from %s delivered to %d connections", session.name, delivered)

        room = self.directory.get_room(room_id) if room_id is not None else None
        if room is None or session.user_id is None or not room.persisted:
            return
        try:
            await self.store.save_message(room_id, session.user_id, frame.text)
        except StoreError as e:
            session.send(ChatMessage.failure("Message was delivered but not saved", f"Database error: {e}"))

    async def _on_typing(self, session: "ChatSession", frame: ChatMessage) -> None:
        self.registry.broadcast(frame.to_wire(), lambda c: c.id != session.connection_id)

    async def _on_create_room(self, session: "ChatSession", frame: ChatMessage) -> None:
        user_id = session.require_identity()
        command = self._command(CreateRoomCommand, frame.text)
        name = command.name.strip()
        if not name:
            raise InvalidFrameError("room name required")

        password_hash = None
        if command.room_type is RoomType.PROTECTED and command.password:
            password_hash = await asyncio.to_thread(hash_password, command.password)

        failure = None
        stored_id = None
        try:
            stored_id = await self.store.create_room(name, command.room_type, password_hash, user_id)
        except StoreError as e:
            failure = ChatMessage.failure("Room was created but not saved", f"Database error: {e}")
        else:
            try:
                await self.store.join_room(stored_id, user_id, "admin")
            except StoreError as e:
                failure = ChatMessage.failure("Room was saved without its admin", f"Database error: {e}")

        room_id = await self.directory.create_room(
            name, command.room_type, password_hash, user_id, room_id=stored_id
        )

        session.send(
            ChatMessage(
                message_type=MessageType.CREATE_ROOM,
                user=session.name,
                text=f"Created room {name}",
                avatar=avatar_url(session.name),
                room_id=room_id,
            )
        )
        if failure is not None:
            session.send(failure)

        self.broadcast_room_list(f"{session.name} created a new room: {name}")

    async def _on_join_room(self, session: "ChatSession", frame: ChatMessage) -> None:
        user_id = session.require_identity()
        room_id = frame.room_id
        if room_id is None:
            room_id = self._command(JoinRoomCommand, frame.text).room_id

        room = self.directory.get_room(room_id)
        if room is None:
            await self.refresh_rooms()
            room = self.directory.get_room(room_id)
            if room is None:
                raise RoomNotFoundError(room_id)

        notice = ChatMessage(
            message_type=MessageType.ROOM_JOINED,
            user=session.name,
            text=f"{session.name} joined the room",
            avatar=avatar_url(session.name),
            room_id=room_id,
        )

        if session.room_id == room_id:
            session.send(notice)
            return

        former_room = await session.exit_room()
        if former_room is not None:
            self.notify_room_left(session, former_room, include_self=True)

        if not await session.enter_room(room_id):
            return

        if room.persisted:
            try:
                await self.store.join_room(room_id, user_id, "member")
            except StoreError as e:
                session.send(ChatMessage.failure("Joined room but membership was not saved", f"Database error: {e}"))

        await self._replay_history(session, room)

        wire = notice.to_wire()
        for connection_id in self.directory.members(room_id):
            self.registry.deliver(connection_id, wire)

    async def _on_leave_room(self, session: "ChatSession", frame: ChatMessage) -> None:
        former_room = await session.exit_room()
        if former_room is None:
            logger.debug("%s sent leave_room outside any room", session.name)
            return
        self.notify_room_left(session, former_room, include_self=True)

    # ---- helpers ----------------------------------------------------------

    async def _replay_history(self, session: "ChatSession", room: Room) -> None:
        if not room.persisted:
            return
        try:
            messages = await self.store.get_room_messages(room.id, self.history_limit)
        except StoreError as e:
            session.send(ChatMessage.failure("Failed to load room history", f"Database error: {e}"))
            return

        # The session may have moved on while storage was answering
        if session.room_id != room.id:
            logger.debug("Discarding history for room #%d, %s is no longer there", room.id, session.name)
            return

        for message in sorted(messages, key=lambda m: (m.created_at, m.id)):
            session.send(
                ChatMessage(
                    message_type=MessageType.CHAT,
                    user=message.sender_name,
                    text=message.content,
                    timestamp=message.created_at,
                    avatar=avatar_url(message.sender_name),
                    room_id=room.id,
                )
            )

    def notify_room_left(self, session: "ChatSession", room_id: int, include_self: bool) -> None:
        wire = ChatMessage(
            message_type=MessageType.ROOM_LEFT,
            user=session.name,
            text=f"{session.name} left the room",
            avatar=avatar_url(session.name),
            room_id=room_id,
        ).to_wire()

        targets = self.directory.members(room_id)
        if include_self:
            targets.add(session.connection_id)
        for connection_id in targets:
            self.registry.deliver(connection_id, wire)

    async def refresh_rooms(self) -> bool:
        """Pull persisted rooms into the directory. False if storage is down."""
        try:
            rooms = await self.store.list_rooms()
        except StoreError as e:
            logger.warning("Could not load rooms from storage: %s", e)
            return False
        await self.directory.load(rooms)
        return True

    def room_list(self, text: str) -> ChatMessage:
        return ChatMessage.system(MessageType.ROOM_LIST, text, rooms=self.directory.room_infos())

    def send_room_list(self, session: "ChatSession") -> None:
        session.send(self.room_list("Available rooms"))

    def broadcast_room_list(self, text: str) -> None:
        self.registry.broadcast(self.room_list(text).to_wire())
