# chatrelay/services/connection_registry.py

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

_CLOSE = object()

# ============================================================================
# DELIVERY HANDLE
# ============================================================================

class Outbox:
    """
    Unbounded per-connection delivery queue.

    ``push`` never blocks, so a slow socket only delays its own connection.
    A single writer task per connection calls ``drain`` to move queued
    messages onto the transport.
    """

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, message: dict) -> None:
        if not self.closed:
            self.queue.put_nowait(message)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(_CLOSE)

    async def drain(self, send: Callable[[dict], Awaitable[Any]]) -> None:
        """
        Forward queued messages to ``send`` until the outbox is closed.

        A failed send ends the writer; the reader side notices the broken
        transport and tears the session down.
        """
        while True:
            message = await self.queue.get()
            if message is _CLOSE:
                return
            try:
                await send(message)
            except Exception as e:
                logger.warning("Send error, stopping writer: %s", e)
                self.closed = True
                return


@dataclass
class Connection:
    id: int
    name: str
    outbox: Outbox = field(default_factory=Outbox, repr=False)
    user_id: Optional[int] = None
    room_id: Optional[int] = None


# ============================================================================
# CONNECTION REGISTRY
# ============================================================================

class ConnectionRegistry:
    """
    Exclusive owner of every live connection.

    Data Structures:
        _connections: Maps connection_id -> Connection, in registration order
                      Example: {1: Connection(id=1, name="alice", room_id=5)}

    Concurrency:
        ``lock`` serializes mutations of this registry *and* of the
        RoomDirectory built on top of it, so room membership never drifts
        from connection liveness. Reads (``snapshot``, ``get``) are plain
        synchronous copies; on the event loop they cannot interleave with a
        mutation in progress.
    """

    def __init__(self) -> None:
        self._connections: Dict[int, Connection] = {}
        self._ids = itertools.count(1)
        self.lock = asyncio.Lock()

    async def register(self, name: str, outbox: Optional[Outbox] = None) -> int:
        """
        Add a new connection.

        Args:
            name: Display name supplied at connect time
            outbox: Delivery handle; a fresh Outbox is created when omitted

        Returns:
            The new connection id
        """
        async with self.lock:
            connection = Connection(id=next(self._ids), name=name, outbox=outbox or Outbox())
            self._connections[connection.id] = connection
            total = len(self._connections)

        logger.info("✓ %s connected as #%d. Total: %d", name, connection.id, total)
        return connection.id

    async def unregister(self, connection_id: int) -> Optional[Connection]:
        """Remove a connection. Returns it, or None if it was already gone."""
        async with self.lock:
            connection = self._connections.pop(connection_id, None)
            total = len(self._connections)

        if connection is not None:
            connection.outbox.close()
            logger.info("✗ %s (#%d) disconnected. Total: %d", connection.name, connection_id, total)
        return connection

    def get(self, connection_id: int) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def identify(self, connection_id: int, user_id: int) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        connection.user_id = user_id
        return True

    def snapshot(self, predicate: Optional[Callable[[Connection], bool]] = None) -> List[Connection]:
        """Point-in-time copy of live connections, optionally filtered."""
        connections = list(self._connections.values())
        if predicate is None:
            return connections
        return [c for c in connections if predicate(c)]

    def deliver(self, connection_id: int, message: dict) -> bool:
        """
        Best-effort push to one connection.

        Returns False (and does nothing) when the connection has already
        disconnected.
        """
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        connection.outbox.push(message)
        return True

    def broadcast(self, message: dict, predicate: Optional[Callable[[Connection], bool]] = None) -> int:
        """Deliver ``message`` to every connection matching ``predicate``."""
        targets = self.snapshot(predicate)
        for connection in targets:
            connection.outbox.push(message)
        return len(targets)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: int) -> bool:
        return connection_id in self._connections
