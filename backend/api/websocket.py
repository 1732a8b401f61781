"""WebSocket event feed for the UI."""

import asyncio
import json
import logging

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


def encode_event(event: str, data) -> str:
    """Serialize one event; models, enums and paths become plain JSON."""
    return json.dumps({"event": event, "data": jsonable_encoder(data)})


class EventBroadcaster:
    """Fans TransferManager events out to every connected UI client."""

    def __init__(self, snapshot_provider=None) -> None:
        """
        Args:
            snapshot_provider: fn() -> dict. A new client gets its result
                before any event, so it never starts from a blank state.
        """
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._snapshot_provider = snapshot_provider

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        if self._snapshot_provider:
            await websocket.send_text(encode_event("snapshot", self._snapshot_provider()))
        async with self._lock:
            self._clients.add(websocket)
        logger.info(f"WebSocket client connected. Total: {self.client_count}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(websocket)
        logger.info(f"WebSocket client disconnected. Total: {self.client_count}")

    async def broadcast(self, event: str, data) -> None:
        """Send to every client; a client whose send fails is dropped."""
        message = encode_event(event, data)
        async with self._lock:
            clients = list(self._clients)

        gone = []
        for ws in clients:
            try:
                await ws.send_text(message)
            except Exception as e:
                logger.debug(f"Dropping WebSocket client: {e}")
                gone.append(ws)

        if gone:
            async with self._lock:
                self._clients.difference_update(gone)
            logger.info(f"Dropped {len(gone)} WebSocket client(s). Total: {self.client_count}")

    async def handle_event(self, event_type: str, data) -> None:
        """Callback for TransferManager.on_event()."""
        await self.broadcast(event_type, data)
