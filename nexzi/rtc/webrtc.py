"""
Media-transport primitives consumed by the negotiation core.

The concrete WebRTC stack lives outside the core.  This module defines the
serialisable description/candidate containers exchanged over signaling and
the small base classes a media-transport or media-capture backend has to
implement (see :mod:`nexzi.rtc.aiortc_transport` for the aiortc one).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .ice import TransportConfig

GATHERING_COMPLETE = "complete"
CONNECTION_FAILED = "failed"


@dataclass(frozen=True)
class SessionDescription:
    """One half of an offer/answer exchange."""

    type: str
    sdp: str

    def to_dict(self) -> dict:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, payload: Any) -> "SessionDescription":
        if not isinstance(payload, dict):
            raise ValueError("session description must be an object")
        kind = payload.get("type")
        sdp = payload.get("sdp")
        if kind not in {"offer", "answer"}:
            raise ValueError(f"unsupported description type {kind!r}")
        if not isinstance(sdp, str):
            raise ValueError("session description requires an sdp string")
        return cls(type=kind, sdp=sdp)


@dataclass(frozen=True)
class ICECandidate:
    """Serialisable ICE candidate container."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "ICECandidate":
        if not isinstance(payload, dict) or not isinstance(payload.get("candidate"), str):
            raise ValueError("candidate requires a candidate string")
        index = payload.get("sdpMLineIndex")
        return cls(
            candidate=payload["candidate"],
            sdp_mid=payload.get("sdpMid"),
            sdp_mline_index=int(index) if index is not None else None,
        )


class MediaTrack:
    """
    Minimal view of a media track as seen by the core.
    """

    id: str = ""
    kind: str = ""

    def stop(self) -> None:
        raise NotImplementedError


class MediaStream:
    """
    A bundle of tracks produced by a capture backend or assembled from
    remote ``track`` events.
    """

    def __init__(self, tracks: Optional[Sequence[MediaTrack]] = None, stream_id: str = "") -> None:
        self.id = stream_id
        self.tracks: List[MediaTrack] = list(tracks or [])
        self._ended_callbacks: List[Callable[[], None]] = []

    def add_track(self, track: MediaTrack) -> None:
        if track not in self.tracks:
            self.tracks.append(track)

    def on_ended(self, callback: Callable[[], None]) -> None:
        """Register ``callback`` for when the user stops the capture."""

        self._ended_callbacks.append(callback)

    def notify_ended(self) -> None:
        for callback in list(self._ended_callbacks):
            callback()

    def stop(self) -> None:
        self._ended_callbacks.clear()
        for track in self.tracks:
            track.stop()


class Connection:
    """
    One underlying peer connection.

    Events emitted through handlers registered with :meth:`on`:
    ``icecandidate`` (``ICECandidate``), ``icegatheringstatechange`` (no
    argument), ``track`` (``MediaTrack``) and ``connectionstatechange`` (no
    argument).
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Callable[..., Any]]] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            handler(*args)

    @property
    def local_description(self) -> Optional[SessionDescription]:
        raise NotImplementedError

    @property
    def ice_gathering_state(self) -> str:
        raise NotImplementedError

    @property
    def connection_state(self) -> str:
        raise NotImplementedError

    def add_transceiver(self, kind: str, direction: str) -> None:
        raise NotImplementedError

    def add_track(self, track: MediaTrack, stream: MediaStream) -> None:
        raise NotImplementedError

    async def create_description(self, kind: str) -> SessionDescription:
        raise NotImplementedError

    async def set_local_description(self, description: SessionDescription) -> None:
        raise NotImplementedError

    async def set_remote_description(self, description: SessionDescription) -> None:
        raise NotImplementedError

    async def add_ice_candidate(self, candidate: ICECandidate) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class MediaTransport:
    """Factory for :class:`Connection` objects."""

    def create_connection(self, config: TransportConfig) -> Connection:
        raise NotImplementedError


class MediaCapture:
    """Screen capture backend."""

    async def acquire_display_media(self, *, video: bool = True, audio: bool = True) -> MediaStream:
        """
        Return a stream of the local display.

        Raises :class:`nexzi.errors.PermissionDenied` when the user
        refuses the capture and :class:`~nexzi.errors.MediaCaptureError`
        for any other failure.
        """

        raise NotImplementedError


__all__ = [
    "CONNECTION_FAILED",
    "Connection",
    "GATHERING_COMPLETE",
    "ICECandidate",
    "MediaCapture",
    "MediaStream",
    "MediaTrack",
    "MediaTransport",
    "SessionDescription",
]
