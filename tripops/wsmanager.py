import logging
from typing import List
from fastapi import WebSocket
from .config import config

logger = logging.getLogger(__name__)

class ConnectionManager:
    def __init__(self, max_connections: int = None):
        self.active_connections: List[WebSocket] = []
        self.max_connections = max_connections or config.ws_max_connections

    async def connect(self, websocket: WebSocket) -> bool:
        if len(self.active_connections) >= self.max_connections:
            await websocket.close(code=1013)
            logger.warning("WebSocket rejected, %d connections open", len(self.active_connections))
            return False
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info("WebSocket connected. Total connections: %d", len(self.active_connections))
        return True

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info("WebSocket disconnected. Total connections: %d", len(self.active_connections))

    async def broadcast(self, message: dict):
        """Broadcast message to all connected WebSocket clients."""
        if not self.active_connections:
            return

        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning("WebSocket broadcast error: %s", e)
                # Remove bad connection
                self.disconnect(connection)

    async def broadcast_trip(self, snapshot: dict):
        """Push an updated trip costing snapshot to live dashboards."""
        await self.broadcast({"type": "trip_costing", "payload": snapshot})

# Shared by the API routes and the websocket endpoint
manager = ConnectionManager()
