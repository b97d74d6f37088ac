"""
Real-time fan-out of totals to connected WebSocket clients.

Delivery is fire-and-forget: no acknowledgement, no retry. A client whose
send fails or does not finish within the send timeout is dropped from the set.
"""

import asyncio
import logging
from typing import Protocol, Set

from fastapi import WebSocket

from pledge_tracker.metrics import record_broadcast, websocket_clients

logger = logging.getLogger(__name__)

TOTALS_UPDATED = "totals_updated"


class Broadcaster(Protocol):
    async def publish(self, topic: str, payload: dict) -> int:
        ...


class ConnectionManager:
    """Tracks accepted WebSocket connections and publishes to all of them."""

    def __init__(self, send_timeout: float = 5.0):
        self.connections: Set[WebSocket] = set()
        self.send_timeout = send_timeout

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.add(websocket)
        websocket_clients.set(len(self.connections))
        logger.info(f"Client connected, {len(self.connections)} connected")

    def disconnect(self, websocket: WebSocket) -> None:
        self.connections.discard(websocket)
        websocket_clients.set(len(self.connections))
        logger.info(f"Client disconnected, {len(self.connections)} connected")

    async def _send(self, websocket: WebSocket, message: dict) -> None:
        await asyncio.wait_for(websocket.send_json(message), timeout=self.send_timeout)

    async def publish(self, topic: str, payload: dict) -> int:
        """
        Send {"event": topic, "data": payload} to every connected client.

        Works on a copy of the connection set so clients joining or leaving
        mid-send don't affect this fan-out. Returns the number of clients
        the message reached.
        """
        targets = list(self.connections)
        if not targets:
            logger.debug(f"No clients connected, {topic} not sent")
            return 0

        message = {"event": topic, "data": payload}
        results = await asyncio.gather(
            *(self._send(ws, message) for ws in targets),
            return_exceptions=True,
        )

        delivered = 0
        for websocket, result in zip(targets, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.warning(f"Dropping client after send timed out ({self.send_timeout}s)")
                self.disconnect(websocket)
            elif isinstance(result, Exception):
                logger.warning(f"Dropping client after failed send: {result}")
                self.disconnect(websocket)
            else:
                delivered += 1
        return delivered


async def broadcast_totals(broadcaster: Broadcaster, snapshot, source: str) -> None:
    """
    Publish a totals snapshot as a totals_updated event.
    Failures are logged and counted, never raised.
    """
    try:
        delivered = await broadcaster.publish(TOTALS_UPDATED, snapshot.to_payload())
    except Exception:
        logger.exception(f"Broadcast from {source} failed")
        record_broadcast(source, "failed")
        return

    record_broadcast(source, "sent")
    logger.info(
        f"Broadcast {TOTALS_UPDATED} from {source} to {delivered} client(s)",
        extra={"grand_total": snapshot.grand_total},
    )
