import asyncio
import logging
from queue import Empty, Queue
from typing import Set

from fastapi import WebSocket

log = logging.getLogger("ws")

class LiveFeed:
    """Fan-out of ingested records and derived events to WebSocket clients.

    Producers (REST handlers, the paho network thread) put JSON strings on a
    plain ``queue.Queue``; ``pump`` drains it on the event loop.
    """

    def __init__(self) -> None:
        self.queue: Queue[str] = Queue(maxsize=10000)
        self.clients: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.clients.add(websocket)

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            self.clients.discard(websocket)

    async def broadcast(self, message: str):
        async with self._lock:
            targets = list(self.clients)
        if targets:
            await asyncio.gather(*(self._send(ws, message) for ws in targets))

    async def _send(self, ws: WebSocket, message: str):
        try:
            await ws.send_text(message)
        except Exception as e:
            log.info("dropping websocket client: %s", e)
            await self.disconnect(ws)

    async def pump(self):
        while True:
            try:
                msg = self.queue.get_nowait()
            except Empty:
                await asyncio.sleep(0.1)
                continue
            await self.broadcast(msg)
