"""Console event helpers (log + persist + websocket fanout)."""

from __future__ import annotations

import logging
from typing import Any

from . import database as db
from .websocket import EVENTS_CHANNEL, manager

logger = logging.getLogger("maturador.events")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


async def emit_console_event(
    *,
    event_type: str,
    source: str,
    message: str,
    pair_id: str | None = None,
    severity: str = "info",
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    logger.log(_LEVELS.get(severity, logging.INFO), "[%s] %s %s", event_type, pair_id or "-", message)
    event = await db.log_console_event(
        pair_id=pair_id,
        event_type=event_type,
        source=source,
        message=message,
        severity=severity,
        data=data or {},
    )
    payload = {"type": "console_event", "event": event}
    await manager.broadcast(EVENTS_CHANNEL, payload)
    if pair_id:
        await manager.broadcast(pair_id, payload)
    return event
