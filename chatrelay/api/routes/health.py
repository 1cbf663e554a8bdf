# chatrelay/api/routes/health.py

from fastapi import APIRouter

from chatrelay.core import state

router = APIRouter()

@router.get("/health")
async def health():
    """
    Health check endpoint.

    Returns current system status, connection counts, and room counts.
    Used by container health probes and monitoring.

    Returns:
        dict: Status, connection count, room count, active room count
    """
    rooms = state.room_directory.list_rooms()
    return {
        "status": "healthy",
        "connections": len(state.registry),
        "rooms": len(rooms),
        "active_rooms_with_members": sum(1 for room in rooms if room.members),
    }
