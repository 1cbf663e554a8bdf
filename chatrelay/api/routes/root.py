# chatrelay/api/routes/root.py

from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    """
    Root endpoint - API information.

    Returns basic info about the relay and its endpoints.
    """
    return {
        "message": "chatrelay - real-time group messaging relay",
        "version": "1.0",
        "features": ["global_chat", "rooms", "typing_indicators", "history_replay"],
        "endpoints": {
            "websocket": "/ws?username=<name>",
            "rooms": "/rooms",
            "health": "/health",
            "metrics": "/metrics",
        },
    }
