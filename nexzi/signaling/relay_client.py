"""
WebSocket client for the nexzi signaling relay.

The relay broadcasts every signaling frame to all other connected clients, so
this channel behaves exactly like the in-memory bus from the core's point of
view.  Frames published while the socket is down are queued and flushed in
order once the connection is re-established.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import WebSocketException

from ..errors import InvalidPayload
from .channel import SignalingChannel
from .messages import MESSAGE_TYPES, SignalingMessage, encode_message, message_from_dict

LOG = logging.getLogger(__name__)

ConnectFactory = Callable[[str], Any]


class WebSocketSignalingChannel(SignalingChannel):
    def __init__(
        self,
        url: str,
        *,
        queue_size: int = 256,
        reconnect_delay: float = 2.0,
        connect: Optional[ConnectFactory] = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.reconnect_delay = max(0.0, float(reconnect_delay))
        self._connect: ConnectFactory = connect or websockets.connect
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self._unsent: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.connected = asyncio.Event()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self.connected.clear()

    def publish(self, message: SignalingMessage) -> None:
        frame = encode_message(message)
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull:
            LOG.warning("Signaling outbox full; dropping %s for %s", message.type, message.target)

    async def _run(self) -> None:
        while self._running:
            try:
                async with self._connect(self.url) as websocket:
                    LOG.info("Connected to signaling relay %s", self.url)
                    self.connected.set()
                    await self._pump(websocket)
            except asyncio.CancelledError:
                raise
            except (OSError, WebSocketException) as exc:
                LOG.warning("Signaling relay connection failed: %s", exc)
            finally:
                self.connected.clear()
            if self._running:
                await asyncio.sleep(self.reconnect_delay)

    async def _pump(self, websocket: Any) -> None:
        sender = asyncio.create_task(self._send_loop(websocket))
        receiver = asyncio.create_task(self._receive_loop(websocket))
        try:
            done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            errors = [task.exception() for task in done]
            for exc in errors:
                if exc is not None:
                    raise exc
        finally:
            for task in (sender, receiver):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

    async def _receive_loop(self, websocket: Any) -> None:
        async for raw in websocket:
            await self._handle_frame(websocket, raw)

    async def _send_loop(self, websocket: Any) -> None:
        while True:
            if self._unsent is None:
                self._unsent = await self._outbox.get()
                self._outbox.task_done()
            # a frame that failed to go out stays first in line for the next connection
            await websocket.send(self._unsent)
            self._unsent = None

    async def _handle_frame(self, websocket: Any, raw: Any) -> None:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            LOG.debug("Ignoring non-JSON relay frame")
            return
        if not isinstance(payload, dict):
            return

        frame_type = str(payload.get("type") or "").lower()
        if frame_type == "ping":
            await websocket.send(json.dumps({"type": "pong", "ts": payload.get("ts")}))
            return
        if frame_type == "error":
            LOG.warning("Relay rejected a frame: %s", payload.get("payload"))
            return
        if frame_type not in MESSAGE_TYPES:
            return

        try:
            message = message_from_dict(payload)
        except InvalidPayload as exc:
            LOG.warning("Dropping malformed signaling frame: %s", exc)
            return
        self._deliver(message)


__all__ = ["WebSocketSignalingChannel"]
