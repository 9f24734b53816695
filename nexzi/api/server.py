"""
FastAPI signaling relay.

Every connected client gets a :class:`RelaySession` with its own bounded send
queue.  Valid signaling frames are broadcast to all other sessions; clients
filter by ``target`` themselves, so the relay never needs to know which
address belongs to which socket.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from ..config import NexziConfig
from ..services.tips import TipsService, resolve_topic
from . import schemas

LOG = logging.getLogger(__name__)


class RelaySession:
    """Track per-connection state and orchestrate send/receive loops."""

    def __init__(self, manager: "RelayManager", websocket: WebSocket, *, queue_size: int) -> None:
        self.manager = manager
        self.websocket = websocket
        self.session_id = uuid.uuid4().hex
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.last_pong = time.monotonic()
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.session_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        # register before accepting so nothing broadcast after the handshake is missed
        await self.manager.register(self)
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to accept WebSocket connection")
            await self.manager.unregister(self)
            return

        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
        except asyncio.CancelledError:
            raise
        except WebSocketDisconnect:
            self.logger.debug("Signaling client disconnected (%s)", self.session_id)
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Relay session crashed")
        finally:
            await self.manager.unregister(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    def send(self, payload: Dict[str, Any]) -> bool:
        if self.is_stopped:
            return False
        try:
            self.send_queue.put_nowait(dict(payload))
        except asyncio.QueueFull:
            self.logger.warning("Dropping %s frame due to backpressure", payload.get("type"))
            return False
        return True

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    raw = await self.websocket.receive_text()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except Exception:  # pragma: no cover - safety net
                    self.logger.exception("Failed to receive frame")
                    break

                if len(raw.encode("utf-8")) > self.manager.max_frame_bytes:
                    self.send_error("frame-too-large", "Frame exceeds the relay size limit.")
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    self.send_error("invalid-json", "Frame is not valid JSON.")
                    continue
                if not isinstance(message, dict):
                    self.send_error("invalid-frame", "Frame must be a JSON object.")
                    continue

                msg_type = str(message.get("type") or "").lower()
                if msg_type == "pong":
                    self.last_pong = time.monotonic()
                    continue
                if msg_type == "ping":
                    self.send({"type": "pong", "ts": time.time()})
                    continue

                try:
                    await self.manager.handle_message(self, message)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while relaying frame")
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    payload = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(payload)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    self.logger.debug("Send after close ignored: %s", exc)
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        if self.manager.ping_interval <= 0:
            return
        try:
            while not self.is_stopped:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.manager.ping_interval)
                if self.is_stopped:
                    break
                self.send({"type": "ping", "ts": time.time()})
                if (time.monotonic() - self.last_pong) > self.manager.pong_timeout:
                    self.logger.warning("Ping timeout; closing relay session")
                    await self.close(code=1011, reason="ping timeout")
                    break
        finally:
            self._stop_event.set()

    def send_error(self, code: str, message: str) -> None:
        frame = schemas.ErrorFrame(code=code, message=message)
        self.send({"type": "error", "payload": frame.model_dump()})


class RelayManager:
    """Keep the set of live relay sessions and fan frames out between them."""

    def __init__(
        self,
        *,
        queue_size: int = 256,
        ping_interval: float = 20.0,
        pong_timeout: float = 40.0,
        max_frame_bytes: int = 64 * 1024,
    ) -> None:
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))
        self.max_frame_bytes = max(1024, int(max_frame_bytes))
        self._sessions: Dict[str, RelaySession] = {}
        self._lock = asyncio.Lock()
        self.relayed = 0

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def run(self, websocket: WebSocket) -> None:
        session = RelaySession(self, websocket, queue_size=self.queue_size)
        await session.run()

    async def register(self, session: RelaySession) -> None:
        async with self._lock:
            self._sessions[session.session_id] = session
        LOG.info("Signaling client connected session=%s", session.session_id)

    async def unregister(self, session: RelaySession) -> None:
        async with self._lock:
            removed = self._sessions.pop(session.session_id, None)
        if removed is not None:
            LOG.info("Signaling client disconnected session=%s", session.session_id)

    async def stop(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            await session.close(code=1001, reason="relay shutting down")

    async def broadcast(self, message: Dict[str, Any], *, exclude: Optional[RelaySession] = None) -> int:
        async with self._lock:
            targets = [session for session in self._sessions.values() if session is not exclude]
        delivered = 0
        for target in targets:
            if target.send(message):
                delivered += 1
        return delivered

    async def handle_message(self, session: RelaySession, message: Dict[str, Any]) -> None:
        try:
            envelope = schemas.SignalingEnvelope.model_validate(message)
        except ValidationError as exc:
            errors = exc.errors()
            detail = errors[0].get("msg") if errors else str(exc)
            session.logger.debug("Rejected signaling frame: %s", detail)
            session.send_error("invalid-message", str(detail))
            return

        self.relayed += 1
        await self.broadcast(envelope.to_wire(), exclude=session)


def create_app(
    config: Optional[NexziConfig] = None,
    *,
    tips_service: Optional[TipsService] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    nexzi_config = config or NexziConfig()
    tips = tips_service or TipsService(nexzi_config.help)
    relay = RelayManager(
        queue_size=nexzi_config.relay.queue_size,
        ping_interval=nexzi_config.relay.ping_interval,
        pong_timeout=nexzi_config.relay.pong_timeout,
        max_frame_bytes=nexzi_config.relay.max_frame_bytes,
    )

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        LOG.info("Signaling relay starting (profile=%s)", nexzi_config.profile)
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await relay.stop()
            await tips.aclose()
            LOG.info("Signaling relay stopped")

    app = FastAPI(title="nexzi signaling relay", lifespan=app_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.relay = relay
    app.state.tips = tips

    @app.websocket("/signal")
    async def signal_endpoint(websocket: WebSocket) -> None:
        await relay.run(websocket)

    @app.get("/healthz", response_model=schemas.HealthModel)
    async def healthz() -> schemas.HealthModel:
        return schemas.HealthModel(status="ok", profile=nexzi_config.profile, clients=relay.session_count)

    @app.get("/tips/{topic}", response_model=schemas.TipsResponse)
    async def get_tips(topic: str) -> schemas.TipsResponse:
        try:
            resolved = resolve_topic(topic)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        text = await tips.fetch_tips(resolved)
        return schemas.TipsResponse(topic=resolved.value, text=text)

    return app


__all__ = ["RelayManager", "RelaySession", "create_app"]
