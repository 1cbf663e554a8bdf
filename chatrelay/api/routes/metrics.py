# chatrelay/api/routes/metrics.py
from datetime import datetime, timezone

from fastapi import APIRouter

from chatrelay.core import state

router = APIRouter()

@router.get("/metrics")
async def get_metrics():
    """
    Relay throughput and capacity metrics.

    Returns:
        dict: Message statistics (total relayed, dropped frames, messages/sec)
              and capacity (connections, rooms, active rooms)
    """
    uptime_seconds = (datetime.now(timezone.utc) - state.app_start_time).total_seconds()
    relayed = state.message_router.messages_relayed

    if uptime_seconds > 0:
        messages_per_second = relayed / uptime_seconds
    else:
        messages_per_second = 0

    rooms = state.room_directory.list_rooms()

    return {
        # Statistics
        "total_messages": relayed,
        "frames_dropped": state.message_router.frames_dropped,
        "uptime_hours": round(uptime_seconds / 3600, 2) if uptime_seconds > 0 else 0,
        "messages_per_second": round(messages_per_second, 2),

        # Capacity
        "concurrent_connections": len(state.registry),
        "total_rooms": len(rooms),
        "transient_rooms": sum(1 for room in rooms if not room.persisted),
        "active_rooms_with_members": sum(1 for room in rooms if room.members),
    }
