# chatrelay/main.py

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.core import state
from chatrelay.core.config import settings
from chatrelay.core.errors import StoreError
from chatrelay.core.logging import setup_logging, get_logger
from chatrelay.api.routes import root, health, metrics, rooms
from chatrelay.api import websocket as websocket_module

# Configure logging first
setup_logging()
logger = get_logger(__name__)

# FastAPI app
app = FastAPI(title="chatrelay")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# REST routes
app.include_router(root.router)
app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(rooms.router)

# WebSocket routes
app.include_router(websocket_module.router)


@app.on_event("startup")
async def startup_event():
    logger.info("🚀 Application starting - store backend: %s", settings.STORE_BACKEND)

    store = state.build_store(settings)
    try:
        await store.connect()
    except StoreError as e:
        # Keep serving: chat still works, persistence degrades per request
        logger.error("Store unavailable at startup: %s", e)

    state.init(store, history_limit=settings.HISTORY_LIMIT)
    await state.message_router.refresh_rooms()


@app.on_event("shutdown")
async def on_shutdown():
    if state.store is not None:
        await state.store.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("chatrelay.main:app", host="0.0.0.0", port=8000)

# ============================================================================
# END OF FILE
# ============================================================================
