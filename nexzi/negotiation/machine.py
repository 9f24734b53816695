"""
Offer/answer negotiation state machine.

One machine serves one local address and owns at most one
:class:`PeerConnection` at a time.  Every event, whether a public call or an
inbound signaling message, mutates state only while holding the machine lock.
The operations that can suspend for an unbounded time (description creation
including the ICE gathering wait, and screen capture) run as tasks outside the
lock, tagged with the epoch of the peer connection that started them; teardown
cancels them and any result that arrives for a stale epoch is discarded.

Phases::

    viewer  IDLE -> CREATING_OFFER -> AWAITING_ANSWER -> CONNECTED
    sharer  IDLE -> RECEIVING_OFFER -> AWAITING_USER_ACCEPT -> CREATING_ANSWER -> CONNECTED

Teardown always returns to ``IDLE`` and regenerates the local address.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from ..address import AddressGenerator, is_valid_address, normalise_address
from ..errors import (
    InvalidPayload,
    MediaCaptureError,
    NegotiationError,
    NegotiationFailed,
    NotInitialized,
    PermissionDenied,
    SessionBusy,
    TransportError,
)
from ..rtc.ice import TransportConfig
from ..rtc.webrtc import (
    CONNECTION_FAILED,
    GATHERING_COMPLETE,
    Connection,
    ICECandidate,
    MediaCapture,
    MediaStream,
    MediaTrack,
    MediaTransport,
    SessionDescription,
)
from ..signaling.channel import SignalingChannel
from ..signaling.messages import Answer, Busy, Candidate, Disconnect, Offer, SignalingMessage
from .payload import decode_description, encode_description
from .policy import BufferUntilGatheringComplete, CandidatePolicy, StreamImmediately

LOG = logging.getLogger(__name__)

BUSY_MESSAGE = "The remote device is busy with another session."

_STALE = object()


class Phase(str, Enum):
    IDLE = "idle"
    CREATING_OFFER = "creating-offer"
    AWAITING_ANSWER = "awaiting-answer"
    RECEIVING_OFFER = "receiving-offer"
    AWAITING_USER_ACCEPT = "awaiting-user-accept"
    CREATING_ANSWER = "creating-answer"
    CONNECTED = "connected"


class Role(str, Enum):
    SHARER = "sharer"
    VIEWER = "viewer"


class BusyPolicy(str, Enum):
    """What to do with an offer that arrives while a session is active."""

    REJECT = "reject"
    REPLACE = "replace"


INCOMING_PHASES = frozenset({Phase.RECEIVING_OFFER, Phase.AWAITING_USER_ACCEPT})
CANDIDATE_PHASES = frozenset(
    {
        Phase.AWAITING_ANSWER,
        Phase.RECEIVING_OFFER,
        Phase.AWAITING_USER_ACCEPT,
        Phase.CREATING_ANSWER,
        Phase.CONNECTED,
    }
)


@dataclass
class PeerConnection:
    """
    One negotiation/media attempt.
    """

    local_address: str
    epoch: int
    policy: CandidatePolicy
    connection: Connection
    role: Role
    remote_address: Optional[str] = None
    phase: Phase = Phase.IDLE
    local_description: Optional[SessionDescription] = None
    remote_description: Optional[SessionDescription] = None
    pending_candidates: Deque[ICECandidate] = field(default_factory=deque)
    outbound_candidates: List[ICECandidate] = field(default_factory=list)
    description_sent: bool = False
    local_stream: Optional[MediaStream] = None
    remote_stream: Optional[MediaStream] = None
    gathering_complete: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def local_tracks(self) -> List[MediaTrack]:
        return list(self.local_stream.tracks) if self.local_stream else []

    @property
    def remote_tracks(self) -> List[MediaTrack]:
        return list(self.remote_stream.tracks) if self.remote_stream else []


class NegotiationStateMachine:
    def __init__(
        self,
        channel: SignalingChannel,
        transport: MediaTransport,
        capture: MediaCapture,
        *,
        addresses: Optional[AddressGenerator] = None,
        transport_config: Optional[TransportConfig] = None,
        policy: CandidatePolicy = StreamImmediately,
        busy_policy: BusyPolicy = BusyPolicy.REJECT,
        gathering_timeout: float = 10.0,
    ) -> None:
        self._channel = channel
        self._transport = transport
        self._capture = capture
        self._addresses = addresses or AddressGenerator()
        self.transport_config = transport_config or TransportConfig()
        self.policy = policy
        self.busy_policy = BusyPolicy(busy_policy)
        self.gathering_timeout = max(0.1, float(gathering_timeout))

        self.local_address = self._addresses.generate()
        self.peer: Optional[PeerConnection] = None
        self.last_error: Optional[str] = None
        self.offer_code: Optional[str] = None
        self.answer_code: Optional[str] = None

        self._epoch = 0
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Future] = set()
        self._background: Set[asyncio.Future] = set()
        self._observer_counter = 0
        self._observers: Dict[int, Callable[["NegotiationStateMachine"], None]] = {}

    # ------------------------------------------------------------------ observers

    def subscribe(self, callback: Callable[["NegotiationStateMachine"], None]) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def _changed(self) -> None:
        for token, callback in list(self._observers.items()):
            try:
                callback(self)
            except Exception:  # pragma: no cover - observer failures must not break negotiation
                LOG.exception("Negotiation observer %s failed.", token)

    # ------------------------------------------------------------------ state

    @property
    def phase(self) -> Phase:
        return self.peer.phase if self.peer else Phase.IDLE

    @property
    def role(self) -> Optional[Role]:
        return self.peer.role if self.peer else None

    def record_error(self, message: Optional[str]) -> None:
        self.last_error = message
        self._changed()

    # ------------------------------------------------------------------ viewer flow

    async def connect_to_remote(self, remote_address: str) -> None:
        """
        Start a viewer session towards ``remote_address`` over the signaling channel.
        """

        remote = normalise_address(remote_address)
        if not is_valid_address(remote):
            raise InvalidPayload(
                f"invalid address {remote_address!r}",
                user_message="Enter the 9-digit address of the remote device.",
            )
        if remote == self.local_address:
            raise InvalidPayload(
                "cannot connect to the local address",
                user_message="You cannot connect to your own address.",
            )
        await self._start_offer(remote, self.policy)

    async def create_offer(self) -> Optional[str]:
        """
        Start a viewer session for manual exchange and return the offer code.
        """

        await self._start_offer(None, BufferUntilGatheringComplete)
        return self.offer_code

    async def accept_answer(self, answer_code: str) -> None:
        async with self._lock:
            peer = self.peer
            if peer is None or peer.role is not Role.VIEWER or peer.phase is not Phase.AWAITING_ANSWER:
                raise NotInitialized("no offer is waiting for an answer")
            try:
                answer = decode_description(answer_code, expected_type="answer")
                await self._apply_answer_locked(peer, answer)
            except NegotiationError as exc:
                LOG.warning("Failed to accept answer: %s", exc)
                await self._teardown_locked(notify_remote=self._should_notify(peer), error=exc.user_message)
                raise

    async def _start_offer(self, remote: Optional[str], policy: CandidatePolicy) -> None:
        async with self._lock:
            self._require_idle()
            peer = self._open_peer(Role.VIEWER, remote, policy, Phase.CREATING_OFFER)
            epoch = peer.epoch
            try:
                for kind in ("video", "audio"):
                    peer.connection.add_transceiver(kind, "recvonly")
            except Exception as exc:
                await self._teardown_locked(notify_remote=False, error=NegotiationFailed.default_message)
                raise NegotiationFailed(f"could not prepare receivers: {exc}") from exc
            LOG.info("Creating offer for %s (policy=%s)", remote or "manual exchange", policy.name)
            self._changed()

        try:
            description = await self._suspend(epoch, self._produce_description(peer, "offer"))
        except NegotiationError as exc:
            await self._fail(epoch, exc)
            raise
        if description is _STALE:
            return

        async with self._lock:
            if not self._is_current(epoch):
                return
            peer.local_description = description
            peer.phase = Phase.AWAITING_ANSWER
            if remote is not None:
                self._send_description(
                    peer, Offer(target=remote, sender=self.local_address, offer=description)
                )
            else:
                self.offer_code = encode_description(description)
            self._changed()

    # ------------------------------------------------------------------ sharer flow

    async def accept_call(self) -> None:
        async with self._lock:
            peer = self.peer
            if peer is None or peer.role is not Role.SHARER or peer.phase not in INCOMING_PHASES:
                raise NotInitialized("there is no incoming call to accept")
            peer.phase = Phase.CREATING_ANSWER
            epoch = peer.epoch
            self._changed()
        await self._answer(peer, epoch)

    async def create_answer(self, offer_code: str) -> Optional[str]:
        """
        Manual exchange entry point for the sharer: parse ``offer_code``, share
        the screen and return the answer code.
        """

        async with self._lock:
            self._require_idle()
            offer = decode_description(offer_code, expected_type="offer")
            peer = self._open_peer(Role.SHARER, None, BufferUntilGatheringComplete, Phase.RECEIVING_OFFER)
            try:
                await self._apply_remote_offer_locked(peer, offer)
            except NegotiationError as exc:
                await self._teardown_locked(notify_remote=False, error=exc.user_message)
                raise
            peer.phase = Phase.CREATING_ANSWER
            epoch = peer.epoch
            self._changed()
        await self._answer(peer, epoch)
        return self.answer_code

    async def reject_call(self) -> None:
        async with self._lock:
            peer = self.peer
            if peer is None or peer.phase not in INCOMING_PHASES:
                LOG.debug("reject_call ignored in phase %s", self.phase.value)
                return
            LOG.info("Rejecting call from %s", peer.remote_address)
            await self._teardown_locked(notify_remote=True, error=None)

    async def _answer(self, peer: PeerConnection, epoch: int) -> None:
        try:
            stream = await self._suspend(epoch, self._acquire_media(), discard=_stop_stream)
            if stream is _STALE:
                return
            async with self._lock:
                if not self._is_current(epoch):
                    stream.stop()
                    return
                peer.local_stream = stream
                stream.on_ended(lambda: self._spawn(self._on_capture_ended(epoch)))
                try:
                    for track in stream.tracks:
                        peer.connection.add_track(track, stream)
                except Exception as exc:
                    raise NegotiationFailed(f"could not attach local tracks: {exc}") from exc
                self._changed()

            description = await self._suspend(epoch, self._produce_description(peer, "answer"))
            if description is _STALE:
                return
        except NegotiationError as exc:
            await self._fail(epoch, exc)
            raise

        async with self._lock:
            if not self._is_current(epoch):
                return
            peer.local_description = description
            if peer.remote_address is not None:
                self._send_description(
                    peer, Answer(target=peer.remote_address, sender=self.local_address, answer=description)
                )
            else:
                self.answer_code = encode_description(description)
            peer.phase = Phase.CONNECTED
            LOG.info("Sharing screen with %s", peer.remote_address or "manual peer")
            self._changed()

    async def _acquire_media(self) -> MediaStream:
        try:
            return await self._capture.acquire_display_media(video=True, audio=True)
        except NegotiationError:
            raise
        except PermissionError as exc:
            raise PermissionDenied(str(exc)) from exc
        except Exception as exc:
            raise MediaCaptureError(str(exc)) from exc

    # ------------------------------------------------------------------ teardown

    async def end_session(self) -> None:
        async with self._lock:
            if self.peer is None:
                return
            LOG.info("Ending session with %s", self.peer.remote_address or "manual peer")
            await self._teardown_locked(notify_remote=True, error=None)

    async def close(self) -> None:
        await self.end_session()
        await self.drain()

    async def drain(self) -> None:
        """Wait until event handlers spawned by transport callbacks have finished."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _fail(self, epoch: int, exc: NegotiationError) -> None:
        async with self._lock:
            peer = self.peer
            if peer is None or peer.epoch != epoch:
                return
            LOG.warning("Negotiation failed (%s): %s", type(exc).__name__, exc)
            await self._teardown_locked(notify_remote=self._should_notify(peer), error=exc.user_message)

    @staticmethod
    def _should_notify(peer: PeerConnection) -> bool:
        if peer.remote_address is None:
            return False
        return peer.role is Role.SHARER or peer.description_sent

    async def _teardown_locked(
        self,
        *,
        notify_remote: bool,
        error: Optional[str],
        regenerate_address: bool = True,
    ) -> None:
        peer = self.peer
        self.peer = None
        self.last_error = error
        self.offer_code = None
        self.answer_code = None
        if peer is None:
            self._changed()
            return

        for task in list(self._pending):
            task.cancel()

        if notify_remote and peer.remote_address:
            self._channel.publish(Disconnect(target=peer.remote_address, sender=self.local_address))

        if peer.local_stream is not None:
            peer.local_stream.stop()
        if peer.remote_stream is not None:
            peer.remote_stream.stop()
        try:
            await peer.connection.close()
        except Exception:  # pragma: no cover - transport close failures are not actionable
            LOG.warning("Failed to close peer connection cleanly.", exc_info=True)

        if regenerate_address:
            self.local_address = self._addresses.generate()
            LOG.debug("Local address regenerated")
        self._changed()

    # ------------------------------------------------------------------ inbound signaling

    async def handle_message(self, message: SignalingMessage) -> None:
        if message.target != self.local_address:
            return
        if isinstance(message, Offer):
            await self._on_offer(message)
        elif isinstance(message, Answer):
            await self._on_answer(message)
        elif isinstance(message, Candidate):
            await self._on_candidate(message)
        elif isinstance(message, Disconnect):
            await self._on_disconnect(message)
        elif isinstance(message, Busy):
            await self._on_busy(message)

    async def _on_offer(self, message: Offer) -> None:
        async with self._lock:
            active = self.peer
            if active is not None:
                if active.remote_address == message.sender:
                    LOG.debug("Dropping repeated offer from %s", message.sender)
                    return
                if self.busy_policy is BusyPolicy.REJECT:
                    LOG.info("Busy; rejecting offer from %s", message.sender)
                    self._channel.publish(Busy(target=message.sender, sender=self.local_address))
                    return
                LOG.info("Replacing session with %s by offer from %s", active.remote_address, message.sender)
                # the new offer was routed to the current address, so keep it
                await self._teardown_locked(
                    notify_remote=self._should_notify(active), error=None, regenerate_address=False
                )

            self.last_error = None
            peer = self._open_peer(Role.SHARER, message.sender, self.policy, Phase.RECEIVING_OFFER)
            self._changed()
            try:
                await self._apply_remote_offer_locked(peer, message.offer)
            except NegotiationError as exc:
                LOG.warning("Could not apply offer from %s: %s", message.sender, exc)
                await self._teardown_locked(notify_remote=True, error=exc.user_message)
                return
            peer.phase = Phase.AWAITING_USER_ACCEPT
            LOG.info("Incoming call from %s", message.sender)
            self._changed()

    async def _on_answer(self, message: Answer) -> None:
        async with self._lock:
            peer = self.peer
            if (
                peer is None
                or peer.phase is not Phase.AWAITING_ANSWER
                or peer.remote_address != message.sender
            ):
                LOG.debug("Dropping unexpected answer from %s", message.sender)
                return
            try:
                await self._apply_answer_locked(peer, message.answer)
            except NegotiationError as exc:
                LOG.warning("Could not apply answer from %s: %s", message.sender, exc)
                await self._teardown_locked(notify_remote=True, error=exc.user_message)

    async def _on_candidate(self, message: Candidate) -> None:
        async with self._lock:
            peer = self.peer
            if peer is None or peer.remote_address != message.sender or peer.phase not in CANDIDATE_PHASES:
                LOG.debug("Dropping candidate from %s", message.sender)
                return
            peer.pending_candidates.append(message.candidate)
            if peer.remote_description is not None:
                await self._flush_candidates(peer)

    async def _on_disconnect(self, message: Disconnect) -> None:
        async with self._lock:
            peer = self.peer
            if peer is None:
                return
            if message.sender is not None and message.sender != peer.remote_address:
                LOG.debug("Dropping disconnect from %s", message.sender)
                return
            LOG.info("Remote peer %s ended the session", peer.remote_address)
            await self._teardown_locked(notify_remote=False, error=None)

    async def _on_busy(self, message: Busy) -> None:
        async with self._lock:
            peer = self.peer
            if peer is None or peer.role is not Role.VIEWER or peer.remote_address != message.sender:
                return
            LOG.info("Remote peer %s is busy", message.sender)
            await self._teardown_locked(notify_remote=False, error=BUSY_MESSAGE)

    async def _apply_remote_offer_locked(self, peer: PeerConnection, offer: SessionDescription) -> None:
        try:
            await peer.connection.set_remote_description(offer)
        except Exception as exc:
            raise NegotiationFailed(f"could not apply offer: {exc}") from exc
        peer.remote_description = offer
        await self._flush_candidates(peer)

    async def _apply_answer_locked(self, peer: PeerConnection, answer: SessionDescription) -> None:
        try:
            await peer.connection.set_remote_description(answer)
        except Exception as exc:
            raise NegotiationFailed(f"could not apply answer: {exc}") from exc
        peer.remote_description = answer
        await self._flush_candidates(peer)
        if peer.policy.connects_on_answer or peer.remote_tracks:
            peer.phase = Phase.CONNECTED
            LOG.info("Connected to %s", peer.remote_address or "manual peer")
        self._changed()

    async def _flush_candidates(self, peer: PeerConnection) -> None:
        while peer.pending_candidates:
            candidate = peer.pending_candidates.popleft()
            try:
                await peer.connection.add_ice_candidate(candidate)
            except Exception as exc:
                LOG.warning("Ignoring remote candidate that could not be applied: %s", exc)

    # ------------------------------------------------------------------ transport events

    def _on_local_candidate(self, epoch: int, candidate: Optional[ICECandidate]) -> None:
        # runs synchronously on the loop and only touches the outbound queue
        peer = self.peer
        if candidate is None or peer is None or peer.epoch != epoch:
            return
        if not peer.policy.trickles_candidates or peer.remote_address is None:
            return
        if peer.description_sent:
            self._channel.publish(
                Candidate(target=peer.remote_address, sender=self.local_address, candidate=candidate)
            )
        else:
            peer.outbound_candidates.append(candidate)

    def _on_gathering_state(self, epoch: int) -> None:
        peer = self.peer
        if peer is None or peer.epoch != epoch:
            return
        if peer.connection.ice_gathering_state == GATHERING_COMPLETE:
            peer.gathering_complete.set()

    async def _on_track(self, epoch: int, track: MediaTrack) -> None:
        async with self._lock:
            peer = self.peer
            if peer is None or peer.epoch != epoch:
                return
            if peer.remote_stream is None:
                peer.remote_stream = MediaStream(stream_id=f"remote-{peer.remote_address or 'manual'}")
            peer.remote_stream.add_track(track)
            LOG.debug("Remote %s track received", getattr(track, "kind", "media"))
            if (
                peer.role is Role.VIEWER
                and peer.phase is Phase.AWAITING_ANSWER
                and peer.remote_description is not None
            ):
                peer.phase = Phase.CONNECTED
                LOG.info("Connected to %s", peer.remote_address or "manual peer")
            self._changed()

    async def _on_connection_state(self, epoch: int) -> None:
        async with self._lock:
            peer = self.peer
            if peer is None or peer.epoch != epoch:
                return
            if peer.connection.connection_state != CONNECTION_FAILED:
                return
            LOG.warning("Transport connection to %s failed", peer.remote_address)
            await self._teardown_locked(
                notify_remote=self._should_notify(peer), error=TransportError.default_message
            )

    async def _on_capture_ended(self, epoch: int) -> None:
        async with self._lock:
            peer = self.peer
            if peer is None or peer.epoch != epoch:
                return
            LOG.info("Screen capture stopped by the user")
            await self._teardown_locked(notify_remote=True, error=None)

    # ------------------------------------------------------------------ helpers

    def _require_idle(self) -> None:
        if self.peer is not None:
            raise SessionBusy(f"session already active in phase {self.peer.phase.value}")

    def _is_current(self, epoch: int) -> bool:
        return self.peer is not None and self.peer.epoch == epoch

    def _open_peer(
        self,
        role: Role,
        remote: Optional[str],
        policy: CandidatePolicy,
        phase: Phase,
    ) -> PeerConnection:
        try:
            connection = self._transport.create_connection(self.transport_config)
        except Exception as exc:
            raise NegotiationFailed(f"could not create peer connection: {exc}") from exc

        self._epoch += 1
        epoch = self._epoch
        self.last_error = None
        self.offer_code = None
        self.answer_code = None
        peer = PeerConnection(
            local_address=self.local_address,
            epoch=epoch,
            policy=policy,
            connection=connection,
            role=role,
            remote_address=remote,
            phase=phase,
        )
        connection.on("icecandidate", lambda candidate=None: self._on_local_candidate(epoch, candidate))
        connection.on("icegatheringstatechange", lambda *_: self._on_gathering_state(epoch))
        connection.on("track", lambda track: self._spawn(self._on_track(epoch, track)))
        connection.on("connectionstatechange", lambda *_: self._spawn(self._on_connection_state(epoch)))
        self.peer = peer
        return peer

    def _send_description(self, peer: PeerConnection, message: SignalingMessage) -> None:
        self._channel.publish(message)
        peer.description_sent = True
        queued, peer.outbound_candidates = peer.outbound_candidates, []
        for candidate in queued:
            self._channel.publish(
                Candidate(target=message.target, sender=self.local_address, candidate=candidate)
            )

    async def _produce_description(self, peer: PeerConnection, kind: str) -> SessionDescription:
        connection = peer.connection
        try:
            description = await connection.create_description(kind)
            await connection.set_local_description(description)
            if peer.policy.waits_for_gathering:
                if connection.ice_gathering_state == GATHERING_COMPLETE:
                    peer.gathering_complete.set()
                await asyncio.wait_for(peer.gathering_complete.wait(), timeout=self.gathering_timeout)
        except asyncio.TimeoutError as exc:
            raise NegotiationFailed("ICE gathering did not complete in time") from exc
        except NegotiationError:
            raise
        except Exception as exc:
            raise NegotiationFailed(f"could not create {kind}: {exc}") from exc
        return connection.local_description or description

    async def _suspend(
        self,
        epoch: int,
        operation: Awaitable[Any],
        *,
        discard: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """
        Run ``operation`` as a cancellable task owned by the peer of ``epoch``.

        Returns ``_STALE`` when the task was cancelled or finished after the
        peer had been torn down; errors of a stale task are swallowed.
        """

        task = asyncio.ensure_future(operation)
        self._pending.add(task)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._pending.discard(task)

        if task.cancelled():
            LOG.debug("Pending operation for epoch %s was cancelled", epoch)
            return _STALE
        if not self._is_current(epoch):
            if task.exception() is None and discard is not None:
                discard(task.result())
            LOG.debug("Discarding stale result for epoch %s", epoch)
            return _STALE
        return task.result()

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error("Negotiation event handler failed", exc_info=exc)


def _stop_stream(stream: MediaStream) -> None:
    stream.stop()


__all__ = [
    "BUSY_MESSAGE",
    "BusyPolicy",
    "NegotiationStateMachine",
    "PeerConnection",
    "Phase",
    "Role",
]
