# chatrelay/services/session.py

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from chatrelay.core.config import settings
from chatrelay.core.errors import IdentityRequiredError
from chatrelay.models.models import ChatMessage, MessageType, avatar_url
from chatrelay.services.connection_registry import ConnectionRegistry, Outbox
from chatrelay.services.identity import IdentityResolver
from chatrelay.services.room_directory import RoomDirectory

if TYPE_CHECKING:
    from chatrelay.services.message_router import MessageRouter

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ANONYMOUS = "anonymous"
    IDENTIFIED = "identified"
    IN_ROOM = "in_room"
    DISCONNECTED = "disconnected"


# Inbox events. Frames and identity results share one queue so a session
# only ever changes state from its own consumer task.

@dataclass(frozen=True)
class FrameReceived:
    text: str


@dataclass(frozen=True)
class IdentityResolved:
    user_id: Optional[int]


@dataclass(frozen=True)
class TransportClosed:
    reason: str = ""


# ============================================================================
# SESSION STATE MACHINE
# ============================================================================

class ChatSession:
    """
    Per-connection state machine.

    States:
        CONNECTING   -> ANONYMOUS    open() registered the connection
        ANONYMOUS    -> IDENTIFIED   the identity task posted a user id
        IDENTIFIED  <-> IN_ROOM      enter_room() / exit_room()
        any          -> DISCONNECTED close()

    Room commands need a user id. A join_room or create_room arriving while
    the session is still ANONYMOUS is rejected with an error frame; nothing
    is queued for later. If identity resolution failed, the session stays
    ANONYMOUS and can still chat globally.

    Lifecycle:
        1. ``open()`` registers, greets and starts identity resolution
        2. the transport feeds ``submit()`` / ``transport_closed()``
        3. ``run()`` consumes the inbox in order until the transport closes
        4. ``close()`` leaves the room and unregisters
    """

    def __init__(
        self,
        name: Optional[str],
        registry: ConnectionRegistry,
        directory: RoomDirectory,
        resolver: IdentityResolver,
        router: "MessageRouter",
    ) -> None:
        self.name = (name or "").strip() or settings.DEFAULT_USERNAME
        self.registry = registry
        self.directory = directory
        self.resolver = resolver
        self.router = router

        self.state = SessionState.CONNECTING
        self.connection_id: Optional[int] = None
        self.user_id: Optional[int] = None
        self.room_id: Optional[int] = None
        self.identity_failed = False

        self.outbox = Outbox()
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.identity_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<ChatSession #{self.connection_id} {self.name!r} {self.state.value}>"

    # ---- lifecycle --------------------------------------------------------

    async def open(self) -> None:
        """Register the connection and greet it."""
        self.connection_id = await self.registry.register(self.name, self.outbox)
        self.state = SessionState.ANONYMOUS

        self.identity_task = asyncio.create_task(self._resolve_identity())

        others = [c.name for c in self.registry.snapshot(lambda c: c.id != self.connection_id)]
        self.send(ChatMessage.system(MessageType.USER_LIST, "Current users", users=others))

        await self.router.refresh_rooms()
        self.router.send_room_list(self)

        self.registry.broadcast(
            ChatMessage(
                message_type=MessageType.JOIN,
                user=self.name,
                text=f"{self.name} joined the chat",
                avatar=avatar_url(self.name),
            ).to_wire()
        )

    async def _resolve_identity(self) -> None:
        try:
            user_id = await self.resolver.resolve(self.name)
        except Exception:
            logger.exception("Identity resolution for %s crashed", self.name)
            user_id = None
        self.inbox.put_nowait(IdentityResolved(user_id))

    def submit(self, text: str) -> None:
        self.inbox.put_nowait(FrameReceived(text))

    def transport_closed(self, reason: str = "") -> None:
        self.inbox.put_nowait(TransportClosed(reason))

    async def run(self) -> None:
        """Process inbox events in arrival order until the transport closes."""
        try:
            while True:
                event = await self.inbox.get()
                if isinstance(event, TransportClosed):
                    logger.debug("%r transport closed: %s", self, event.reason)
                    break
                await self.dispatch(event)
        finally:
            await self.close()

    async def dispatch(self, event) -> None:
        if isinstance(event, FrameReceived):
            await self.router.route(self, event.text)
        elif isinstance(event, IdentityResolved):
            self.apply_identity(event.user_id)

    async def close(self) -> None:
        """Tear down: leave the room, unregister, tell everyone."""
        if self.state is SessionState.DISCONNECTED:
            return
        if self.state is SessionState.CONNECTING:
            self.state = SessionState.DISCONNECTED
            return

        former_room = await self.exit_room()
        if former_room is not None:
            self.router.notify_room_left(self, former_room, include_self=False)

        await self.registry.unregister(self.connection_id)
        self.state = SessionState.DISCONNECTED

        self.registry.broadcast(
            ChatMessage(
                message_type=MessageType.LEAVE,
                user=self.name,
                text=f"{self.name} left the chat",
                avatar=avatar_url(self.name),
            ).to_wire()
        )

    # ---- identity ---------------------------------------------------------

    def apply_identity(self, user_id: Optional[int]) -> None:
        if self.state is SessionState.DISCONNECTED:
            logger.debug("Discarding identity result for closed session %s", self.name)
            return
        if user_id is None:
            self.identity_failed = True
            logger.warning("%s stays anonymous: identity could not be resolved", self.name)
            return
        if self.state is not SessionState.ANONYMOUS:
            return

        self.user_id = user_id
        self.registry.identify(self.connection_id, user_id)
        self.state = SessionState.IDENTIFIED
        logger.info("%s identified as user %d", self.name, user_id)

    def require_identity(self) -> int:
        if self.user_id is not None:
            return self.user_id
        if self.identity_failed:
            raise IdentityRequiredError("Identity unavailable: storage could not resolve your user")
        raise IdentityRequiredError("Identity not resolved yet, try again shortly")

    # ---- rooms ------------------------------------------------------------

    async def enter_room(self, room_id: int) -> bool:
        """IDENTIFIED -> IN_ROOM. The caller leaves any current room first."""
        if self.state is not SessionState.IDENTIFIED:
            raise RuntimeError(f"cannot enter a room from state {self.state.value}")
        if not await self.directory.join(room_id, self.connection_id):
            return False
        self.room_id = room_id
        self.state = SessionState.IN_ROOM
        return True

    async def exit_room(self) -> Optional[int]:
        """IN_ROOM -> IDENTIFIED. Returns the room left, or None."""
        if self.state is not SessionState.IN_ROOM:
            return None
        former_room = self.room_id
        await self.directory.leave(former_room, self.connection_id)
        self.room_id = None
        self.state = SessionState.IDENTIFIED
        return former_room

    # ---- delivery ---------------------------------------------------------

    def send(self, message: ChatMessage) -> bool:
        if self.connection_id is None:
            return False
        return self.registry.deliver(self.connection_id, message.to_wire())
