"""Maturador: Main FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from . import pair_control
from . import runtime_config
from . import sweep_driver
from .database import init_db
from .loop_driver import scheduler
from .routes_api import router as api_router
from .runtime_config import ensure_runtime_dirs
from .websocket import manager

# ── Logging ────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("maturador")


# ── Lifespan ───────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Maturador starting up...")
    ensure_runtime_dirs()
    await init_db()
    logger.info("Database initialized at %s", runtime_config.DB_PATH)
    if runtime_config.LOOP_DRIVER_ENABLED and runtime_config.RESUME_ON_STARTUP:
        await pair_control.resume_running_pairs()
    if runtime_config.SWEEPER_AUTOSTART:
        sweep_driver.start_sweeper()
    yield
    sweep_driver.stop_sweeper()
    await scheduler.shutdown()
    logger.info("Maturador shutting down.")


# ── App ────────────────────────────────────────────────────
app = FastAPI(title="Maturador", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


# ── WebSocket endpoint ─────────────────────────────────────
@app.websocket("/ws/{channel}")
async def websocket_endpoint(ws: WebSocket, channel: str):
    """Live feed: ``events`` for every console event, or a pair id for its turns."""
    await manager.connect(ws, channel)
    try:
        while True:
            # Inbound frames are ignored; the socket is a one-way feed.
            await ws.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(ws)
        logger.info("WS disconnected: #%s", channel)
