"""
Shared fixtures for relay tests.

The ``relay`` fixture wires a full core (registry, directory, resolver,
router) around an in-memory store. Sessions opened through it are real
ChatSession objects; their deliveries are read back from their outboxes.
"""

import json
from typing import Iterable, List, Optional

import pytest

from chatrelay.core.errors import StoreError
from chatrelay.services.connection_registry import ConnectionRegistry, Outbox
from chatrelay.services.identity import IdentityResolver
from chatrelay.services.message_router import MessageRouter
from chatrelay.services.room_directory import RoomDirectory
from chatrelay.services.session import ChatSession, FrameReceived
from chatrelay.services.store import MemoryChatStore


class FlakyStore(MemoryChatStore):
    """MemoryChatStore whose named operations raise StoreError."""

    def __init__(self, fail: Iterable[str] = ()) -> None:
        super().__init__()
        self.fail = set(fail)

    def _check(self, operation: str) -> None:
        if operation in self.fail:
            raise StoreError(f"{operation} unavailable")

    async def create_user(self, name):
        self._check("create_user")
        return await super().create_user(name)

    async def find_user_by_name(self, name):
        self._check("find_user_by_name")
        return await super().find_user_by_name(name)

    async def create_room(self, name, room_type, password_hash, creator_id):
        self._check("create_room")
        return await super().create_room(name, room_type, password_hash, creator_id)

    async def list_rooms(self):
        self._check("list_rooms")
        return await super().list_rooms()

    async def join_room(self, room_id, user_id, role="member"):
        self._check("join_room")
        return await super().join_room(room_id, user_id, role)

    async def save_message(self, room_id, user_id, text):
        self._check("save_message")
        return await super().save_message(room_id, user_id, text)

    async def get_room_messages(self, room_id, limit):
        self._check("get_room_messages")
        return await super().get_room_messages(room_id, limit)


def drain(outbox: Outbox) -> List[dict]:
    """Pop every message currently queued on an outbox."""
    messages = []
    while not outbox.queue.empty():
        item = outbox.queue.get_nowait()
        if isinstance(item, dict):
            messages.append(item)
    return messages


def of_type(messages: List[dict], message_type: str) -> List[dict]:
    return [m for m in messages if m["message_type"] == message_type]


async def settle(session: ChatSession) -> None:
    """Wait for identity resolution and apply everything queued in the inbox."""
    if session.identity_task is not None:
        await session.identity_task
    while not session.inbox.empty():
        await session.dispatch(session.inbox.get_nowait())


class Relay:
    def __init__(self, store: Optional[MemoryChatStore] = None) -> None:
        self.store = store or MemoryChatStore()
        self.registry = ConnectionRegistry()
        self.directory = RoomDirectory(self.registry)
        self.resolver = IdentityResolver(self.store)
        self.router = MessageRouter(self.registry, self.directory, self.store, history_limit=50)

    def session(self, name: Optional[str]) -> ChatSession:
        return ChatSession(name, self.registry, self.directory, self.resolver, self.router)

    async def connect(self, name: Optional[str], identify: bool = True) -> ChatSession:
        session = self.session(name)
        await session.open()
        if identify:
            await settle(session)
        return session

    async def send(self, session: ChatSession, **frame) -> None:
        await session.dispatch(FrameReceived(json.dumps(frame)))

    async def create_room(self, session: ChatSession, name: str, room_type: str = "public") -> int:
        await self.send(
            session,
            message_type="create_room",
            text=json.dumps({"name": name, "room_type": room_type}),
        )
        ack = of_type(drain(session.outbox), "create_room")[-1]
        return ack["room_id"]

    async def join(self, session: ChatSession, room_id: int) -> None:
        await self.send(session, message_type="join_room", room_id=room_id)

    @staticmethod
    def clear(*sessions: ChatSession) -> None:
        for session in sessions:
            drain(session.outbox)


@pytest.fixture
def relay():
    return Relay()


@pytest.fixture
def make_relay():
    def _make(fail: Iterable[str] = ()):
        return Relay(FlakyStore(fail))

    return _make
