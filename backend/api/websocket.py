"""WebSocket fan-out of node events to UI clients."""

import asyncio
import json
import logging

from fastapi import WebSocket

from config import UI_SEND_TIMEOUT

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Pushes JSON ``{"event", "data"}`` messages to every connected UI client.

    Sends run outside the lock, one task per client. A client that has not
    taken a message within ``send_timeout`` is dropped.
    """

    def __init__(self, send_timeout: float = UI_SEND_TIMEOUT) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()  # guards _connections
        self._send_timeout = send_timeout

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"UI client connected ({self.client_count} open)")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"UI client disconnected ({self.client_count} open)")

    async def broadcast(self, event: str, data) -> None:
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            clients = list(self._connections)
        if not clients:
            return

        results = await asyncio.gather(*(self._deliver(ws, message) for ws in clients))
        dead = [ws for ws, delivered in zip(clients, results) if not delivered]
        if dead:
            async with self._lock:
                self._connections = [ws for ws in self._connections if ws not in dead]
            logger.info(f"Dropped {len(dead)} unresponsive UI client(s)")

    async def _deliver(self, websocket: WebSocket, message: str) -> bool:
        try:
            await asyncio.wait_for(websocket.send_text(message), self._send_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"UI client stalled for {self._send_timeout}s, dropping it")
            return False
        except Exception as e:
            logger.debug(f"UI client send failed: {e}")
            return False
        return True

    async def handle_event(self, event_type: str, data) -> None:
        """Callback for ``TransferManager.on_event``."""
        await self.broadcast(event_type, data)

    async def handle_session_event(self, event_type: str, peer_id: str, data) -> None:
        """Forward PeerSessionOrchestrator.on_event() state changes (not raw messages)."""
        if event_type == "peer_state":
            await self.broadcast("peer_state", {"peerId": peer_id, "phase": data.value})
        elif event_type in ("channel_open", "channel_closed", "peer_removed"):
            await self.broadcast(event_type, {"peerId": peer_id})
