import asyncio
import itertools
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from constants import SIGNALING_URL
from logging_config import get_logger

logger = get_logger(__name__)

Handler = Callable[[dict], Awaitable[None]]


class SignalingClient:
    """
    Peer side of the relay socket.

    Requests (create-room, join-room) are correlated with their ack by id.
    Inbound events are dispatched to their handler one at a time in arrival
    order, so a handler that is still applying an offer finishes before the
    candidates that followed it are looked at.
    """

    def __init__(self, uri: str = SIGNALING_URL):
        self.uri = uri
        self.websocket = None
        self.connection_id: Optional[str] = None
        self.handlers: Dict[str, Handler] = {}
        self._pending: Dict[int, asyncio.Future] = {}
        self._ack_ids = itertools.count(1)
        self._connected = asyncio.Event()
        self._listener: Optional[asyncio.Task] = None

    def on(self, event: str, handler: Handler):
        self.handlers[event] = handler

    async def connect(self, timeout: float = 10.0):
        logger.info(f"Connecting to rendezvous server at {self.uri}")
        self.websocket = await websockets.connect(self.uri)
        self._listener = asyncio.create_task(self.listen())
        await asyncio.wait_for(self._connected.wait(), timeout)
        logger.info(f"Connected as {self.connection_id}")

    async def listen(self):
        try:
            async for raw in self.websocket:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring malformed message from relay: {raw!r}")
                    continue
                await self._dispatch(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Relay connection closed: {e}")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("Relay connection closed"))
            self._pending.clear()
            handler = self.handlers.get("disconnect")
            if handler:
                await handler({})

    async def _dispatch(self, message: dict):
        event = message.get("event")
        data = message.get("data") or {}

        if event == "connected":
            self.connection_id = data.get("connectionId")
            self._connected.set()
            return
        if event == "ack":
            future = self._pending.pop(message.get("ack"), None)
            if future is not None and not future.done():
                future.set_result(data)
            return

        handler = self.handlers.get(event)
        if handler is None:
            logger.debug(f"No handler for {event}")
            return
        try:
            await handler(data)
        except Exception as e:
            logger.error(f"Error handling {event}: {e}", exc_info=True)

    async def request(self, event: str, data: dict, timeout: float = 10.0) -> dict:
        ack_id = next(self._ack_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[ack_id] = future
        await self._send({"event": event, "data": data, "ack": ack_id})
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(ack_id, None)

    async def emit(self, event: str, data: dict):
        await self._send({"event": event, "data": data})

    async def _send(self, message: Dict[str, Any]):
        if self.websocket is None:
            raise ConnectionError("Not connected to the rendezvous server")
        await self.websocket.send(json.dumps(message))

    async def disconnect(self):
        if self.websocket:
            await self.websocket.close()
        if self._listener:
            await self._listener
