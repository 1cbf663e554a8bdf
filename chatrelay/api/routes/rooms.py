# chatrelay/api/routes/rooms.py

from typing import List

from fastapi import APIRouter, HTTPException

from chatrelay.core import state
from chatrelay.models.models import RoomInfo

router = APIRouter()

# ============================================================================
# ROOM LISTING ENDPOINTS
# ============================================================================

@router.get("/rooms", response_model=List[RoomInfo])
async def list_rooms():
    """
    List all known rooms.

    Rooms are refreshed from storage first (best effort), and member
    counts reflect live WebSocket connections.

    Returns:
        List[RoomInfo]: All rooms with live member counts
    """
    await state.message_router.refresh_rooms()
    return state.room_directory.room_infos()


@router.get("/rooms/{room_id}", response_model=RoomInfo)
async def get_room(room_id: int):
    """
    Get details of a specific room.

    Raises:
        HTTPException: 404 if room not found
    """
    room = state.room_directory.get_room(room_id)
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")
    return room.info()
