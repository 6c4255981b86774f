"""Maturador: WebSocket connection manager for live scheduler events."""

import logging
from typing import Dict, Set

from fastapi import WebSocket

logger = logging.getLogger("maturador.ws")

EVENTS_CHANNEL = "events"


class ConnectionManager:
    """Manages WebSocket connections per channel (a pair id or ``events``)."""

    def __init__(self):
        # channel -> set of websocket connections
        self._channels: Dict[str, Set[WebSocket]] = {}
        # ws -> set of channels subscribed
        self._subscriptions: Dict[WebSocket, Set[str]] = {}

    async def connect(self, ws: WebSocket, channel: str = EVENTS_CHANNEL):
        await ws.accept()
        self._channels.setdefault(channel, set()).add(ws)
        self._subscriptions.setdefault(ws, set()).add(channel)
        logger.info("Client connected to #%s", channel)

    def disconnect(self, ws: WebSocket):
        channels = self._subscriptions.pop(ws, set())
        for ch in channels:
            self._channels.get(ch, set()).discard(ws)
        logger.info("Client disconnected")

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, set()))

    async def broadcast(self, channel: str, message: dict):
        """Send message to all clients subscribed to a channel."""
        dead = []
        for ws in list(self._channels.get(channel, set())):
            try:
                await ws.send_json(message)
            except (RuntimeError, OSError) as exc:
                logger.debug("Dropping websocket on #%s: %s", channel, exc)
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)


manager = ConnectionManager()
