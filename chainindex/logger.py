import logging
from fastapi import WebSocket
from typing import List


class LogManager:
    def __init__(self, name: str = "chainindex"):
        self.active_connections: List[WebSocket] = []
        self._logger = logging.getLogger(name)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast_log(self, message: str):
        for connection in list(self.active_connections):
            try:
                await connection.send_text(message)
            except Exception:
                # Dead socket; the route's receive loop will disconnect it
                self.disconnect(connection)

    async def log(self, message: str, level: int = logging.INFO):
        self._logger.log(level, message)
        await self.broadcast_log(message)

# Global instance
logger = LogManager()
