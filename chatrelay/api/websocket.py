# chatrelay/api/websocket.py

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, status
from fastapi.websockets import WebSocketState

from chatrelay.core import state
from chatrelay.services.session import ChatSession

logger = logging.getLogger(__name__)

router = APIRouter()

# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, username: str = ""):
    """
    WebSocket endpoint for the relay.

    Protocol:
    =========
    Every frame, in both directions, is a JSON object:

        {"message_type": "...", "user": "...", "text": "...",
         "timestamp": "...", "avatar": "...",
         "users": [...], "room_id": 5, "rooms": [...], "error": "..."}

    Client -> Server:
    -----------------
    Chat:          {"message_type": "chat", "text": "hello"}
    Typing:        {"message_type": "typing"} / {"message_type": "stop_typing"}
    Create Room:   {"message_type": "create_room",
                    "text": "{\\"name\\": \\"general\\", \\"room_type\\": \\"public\\"}"}
    Join Room:     {"message_type": "join_room", "room_id": 5}
    Leave Room:    {"message_type": "leave_room"}

    Server -> Client:
    -----------------
    user_list, room_list, join, leave, chat, typing, stop_typing,
    create_room (ack with room_id), room_joined, room_left, error

    Lifecycle:
    ==========
    1. Client connects with ?username=<name> ("Anonymous" if absent)
    2. Session registers, sends user_list + room_list, announces join
    3. The user id is resolved in the background; room commands need it
    4. Frames are handled in order by the session task
    5. On disconnect the session leaves its room and is unregistered

    Error Handling:
        - Invalid JSON / unknown message_type: logged and dropped
        - Binary frames: connection closed (1003)
        - Session worker crash: connection closed (1011)
        - Storage failures: error frame, in-memory effect kept
    """
    await websocket.accept()

    session = ChatSession(
        name=username,
        registry=state.registry,
        directory=state.room_directory,
        resolver=state.identity_resolver,
        router=state.message_router,
    )
    await session.open()

    writer = asyncio.create_task(session.outbox.drain(websocket.send_json))
    worker = asyncio.create_task(session.run())

    async def close_transport() -> None:
        if websocket.application_state == WebSocketState.CONNECTED:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)

    def on_worker_done(task: asyncio.Task) -> None:
        # Nothing reads the inbox any more, so the socket has to go too
        if task.cancelled() or task.exception() is None:
            return
        session.outbox.close()
        asyncio.create_task(close_transport())

    worker.add_done_callback(on_worker_done)

    try:
        while True:
            message = await websocket.receive()

            if message["type"] == "websocket.disconnect":
                session.transport_closed("client disconnected")
                break

            if message.get("text") is not None:
                session.submit(message["text"])
                continue

            logger.warning("Binary frame from %s, closing connection", session.name)
            session.transport_closed("binary frame")
            await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
            break

    except Exception as e:
        logger.error("WebSocket error: %s", e)
        session.transport_closed(str(e))

    try:
        await worker
    except Exception:
        logger.exception("Session worker for %s failed", session.name)
    await writer
