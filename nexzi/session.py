"""
Session manager: the public surface offered to UI layers.

The manager wires one :class:`~nexzi.negotiation.machine.NegotiationStateMachine`
to a signaling channel, serialises inbound messages through a mailbox task,
turns negotiation errors into :attr:`SessionView.error` and notifies observers
with a fresh read-only :class:`SessionView` after every mutation.  UI code
reacts to :class:`LifecycleEvent` notifications instead of being driven by the
core.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from .address import AddressGenerator, format_address
from .config import NexziConfig
from .errors import NegotiationError
from .negotiation.machine import INCOMING_PHASES, NegotiationStateMachine, Phase
from .rtc.webrtc import MediaCapture, MediaStream, MediaTransport
from .signaling.channel import SignalingChannel
from .signaling.messages import SignalingMessage

LOG = logging.getLogger(__name__)

CONNECTING_PHASES = frozenset({Phase.CREATING_OFFER, Phase.AWAITING_ANSWER, Phase.CREATING_ANSWER})


class LifecycleEvent(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class SessionView:
    """
    Read-only projection of the negotiation state for rendering.
    """

    address: str
    phase: Phase
    connected: bool = False
    connecting: bool = False
    role: Optional[str] = None
    error: Optional[str] = None
    incoming_call: Optional[str] = None
    remote_address: Optional[str] = None
    offer_code: Optional[str] = None
    answer_code: Optional[str] = None
    local_stream: Optional[MediaStream] = None
    remote_stream: Optional[MediaStream] = None

    @property
    def display_address(self) -> str:
        return format_address(self.address)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "phase": self.phase.value,
            "isConnected": self.connected,
            "isConnecting": self.connecting,
            "role": self.role,
            "error": self.error,
            "incomingCall": {"from": self.incoming_call} if self.incoming_call else None,
            "offerCode": self.offer_code,
            "answerCode": self.answer_code,
        }


def build_view(machine: NegotiationStateMachine) -> SessionView:
    peer = machine.peer
    phase = machine.phase
    return SessionView(
        address=machine.local_address,
        phase=phase,
        connected=phase is Phase.CONNECTED,
        connecting=phase in CONNECTING_PHASES,
        role=peer.role.value if peer else None,
        error=machine.last_error,
        incoming_call=peer.remote_address if peer and phase in INCOMING_PHASES else None,
        remote_address=peer.remote_address if peer else None,
        offer_code=machine.offer_code,
        answer_code=machine.answer_code,
        local_stream=peer.local_stream if peer else None,
        remote_stream=peer.remote_stream if peer else None,
    )


class SessionManager:
    """
    Orchestrates the single active negotiation for one local address.

    Every public coroutine reports failures through the view instead of
    raising, so UI callbacks can fire and forget.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        transport: MediaTransport,
        capture: MediaCapture,
        config: Optional[NexziConfig] = None,
        *,
        addresses: Optional[AddressGenerator] = None,
    ) -> None:
        self.config = config or NexziConfig()
        self.channel = channel
        self.machine = NegotiationStateMachine(
            channel,
            transport,
            capture,
            addresses=addresses,
            transport_config=self.config.transport,
            policy=self.config.negotiation.candidate_policy,
            busy_policy=self.config.negotiation.busy,
            gathering_timeout=self.config.negotiation.gathering_timeout,
        )
        self._view = build_view(self.machine)
        self._observer_counter = 0
        self._observers: Dict[int, Callable[[SessionView], None]] = {}
        self._lifecycle_observers: Dict[int, Callable[[LifecycleEvent, SessionView], None]] = {}
        self._machine_token = self.machine.subscribe(self._on_machine_change)
        self._channel_token: Optional[int] = None
        self._inbox: Optional[asyncio.Queue[SignalingMessage]] = None
        self._inbox_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "SessionManager":
        await self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        if self._channel_token is not None:
            return
        self._inbox = asyncio.Queue()
        self._inbox_task = asyncio.create_task(self._process_inbox())
        self._channel_token = self.channel.subscribe(self._on_signal)
        LOG.info("Session manager ready at address %s", self.view.display_address)

    async def close(self) -> None:
        if self._channel_token is not None:
            self.channel.unsubscribe(self._channel_token)
            self._channel_token = None
        await self.machine.close()
        if self._inbox_task is not None:
            self._inbox_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._inbox_task
            self._inbox_task = None
        self._inbox = None

    async def drain(self) -> None:
        """
        Wait until queued inbound messages and transport events are processed.
        """

        while True:
            if self._inbox is not None:
                await self._inbox.join()
            await self.machine.drain()
            if self._inbox is None or self._inbox.empty():
                return

    # ------------------------------------------------------------------ observers

    @property
    def view(self) -> SessionView:
        return self._view

    def subscribe(self, callback: Callable[[SessionView], None]) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        try:
            callback(self._view)
        except Exception:  # pragma: no cover - defensive
            LOG.exception("Session observer %s failed during initial view.", token)
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)
        self._lifecycle_observers.pop(token, None)

    def on_lifecycle(self, callback: Callable[[LifecycleEvent, SessionView], None]) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._lifecycle_observers[token] = callback
        return token

    def _on_machine_change(self, machine: NegotiationStateMachine) -> None:
        previous = self._view
        view = build_view(machine)
        self._view = view

        for token, callback in list(self._observers.items()):
            try:
                callback(view)
            except Exception:  # pragma: no cover - observer failures must not break the session
                LOG.exception("Session observer %s failed.", token)

        event: Optional[LifecycleEvent] = None
        if view.connected and not previous.connected:
            event = LifecycleEvent.CONNECTED
        elif previous.phase is not Phase.IDLE and view.phase is Phase.IDLE:
            event = LifecycleEvent.DISCONNECTED
        if event is None:
            return
        LOG.debug("Lifecycle event %s", event.value)
        for token, callback in list(self._lifecycle_observers.items()):
            try:
                callback(event, view)
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Lifecycle observer %s failed.", token)

    # ------------------------------------------------------------------ inbound signaling

    def _on_signal(self, message: SignalingMessage) -> None:
        if message.target != self.machine.local_address:
            return
        if self._inbox is None:
            return
        self._inbox.put_nowait(message)

    async def _process_inbox(self) -> None:
        assert self._inbox is not None
        inbox = self._inbox
        while True:
            message = await inbox.get()
            try:
                await self.machine.handle_message(message)
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover - guard rails
                LOG.exception("Failed to process %s message", message.type)
            finally:
                inbox.task_done()

    # ------------------------------------------------------------------ public API

    async def connect_to_remote(self, remote_address: str) -> None:
        await self._guard(self.machine.connect_to_remote(remote_address))

    async def accept_call(self) -> None:
        await self._guard(self.machine.accept_call())

    async def reject_call(self) -> None:
        await self._guard(self.machine.reject_call())

    async def end_session(self) -> None:
        await self._guard(self.machine.end_session())

    async def create_offer(self) -> Optional[str]:
        await self._guard(self.machine.create_offer())
        return self.view.offer_code

    async def create_answer(self, offer_code: str) -> Optional[str]:
        await self._guard(self.machine.create_answer(offer_code))
        return self.view.answer_code

    async def accept_answer(self, answer_code: str) -> None:
        await self._guard(self.machine.accept_answer(answer_code))

    async def _guard(self, operation: Awaitable[object]) -> None:
        try:
            await operation
        except NegotiationError as exc:
            LOG.warning("%s: %s", type(exc).__name__, exc)
            self.machine.record_error(exc.user_message)


__all__ = ["LifecycleEvent", "SessionManager", "SessionView", "build_view"]
