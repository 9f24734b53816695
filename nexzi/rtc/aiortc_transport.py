"""
aiortc-backed implementations of the media interfaces.

aiortc gathers every local candidate while the local description is applied,
so its connections never emit ``icecandidate`` events; the description
returned by :attr:`AiortcConnection.local_description` already embeds them.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any, Awaitable, Dict, List, Optional, Set, Tuple

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer, MediaRecorder
from aiortc.sdp import candidate_from_sdp

from ..errors import MediaCaptureError, PermissionDenied
from .binding import MediaBinding
from .ice import TransportConfig
from .webrtc import (
    Connection,
    ICECandidate,
    MediaCapture,
    MediaStream,
    MediaTrack,
    MediaTransport,
    SessionDescription,
)

LOG = logging.getLogger(__name__)


class AiortcTrack(MediaTrack):
    """Adapter exposing an aiortc ``MediaStreamTrack`` to the core."""

    def __init__(self, source: Any) -> None:
        self.source = source
        self.id = str(getattr(source, "id", "") or "")
        self.kind = str(getattr(source, "kind", "") or "")

    def stop(self) -> None:
        self.source.stop()


def build_configuration(config: TransportConfig) -> RTCConfiguration:
    servers = [RTCIceServer(**server) for server in config.iter_ice_servers()]
    return RTCConfiguration(iceServers=servers)


class AiortcConnection(Connection):
    def __init__(self, config: TransportConfig) -> None:
        super().__init__()
        self._pc = RTCPeerConnection(configuration=build_configuration(config))
        self._pc.on("icegatheringstatechange", lambda: self.emit("icegatheringstatechange"))
        self._pc.on("connectionstatechange", self._on_connection_state)
        self._pc.on("track", lambda track: self.emit("track", AiortcTrack(track)))

    @property
    def peer_connection(self) -> RTCPeerConnection:
        return self._pc

    @property
    def local_description(self) -> Optional[SessionDescription]:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    @property
    def ice_gathering_state(self) -> str:
        return self._pc.iceGatheringState

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def add_transceiver(self, kind: str, direction: str) -> None:
        self._pc.addTransceiver(kind, direction=direction)

    def add_track(self, track: MediaTrack, stream: MediaStream) -> None:
        source = track.source if isinstance(track, AiortcTrack) else track
        self._pc.addTrack(source)

    async def create_description(self, kind: str) -> SessionDescription:
        if kind == "offer":
            description = await self._pc.createOffer()
        elif kind == "answer":
            description = await self._pc.createAnswer()
        else:
            raise ValueError(f"unsupported description kind {kind!r}")
        return SessionDescription(type=description.type, sdp=description.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_ice_candidate(self, candidate: ICECandidate) -> None:
        raw = candidate.candidate
        if not raw:
            # end-of-candidates marker
            return
        if raw.startswith("candidate:"):
            raw = raw[len("candidate:") :]
        parsed = candidate_from_sdp(raw)
        parsed.sdpMid = candidate.sdp_mid
        parsed.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(parsed)

    async def close(self) -> None:
        await self._pc.close()

    def _on_connection_state(self) -> None:
        LOG.debug("Peer connection state is %s", self._pc.connectionState)
        self.emit("connectionstatechange")


class AiortcTransport(MediaTransport):
    def create_connection(self, config: TransportConfig) -> Connection:
        return AiortcConnection(config)


def default_capture_source(platform: Optional[str] = None) -> Tuple[str, str]:
    """
    Return the ``(file, format)`` pair FFmpeg uses to grab the whole display.
    """

    platform = platform or sys.platform
    if platform.startswith("linux"):
        return os.environ.get("DISPLAY", ":0"), "x11grab"
    if platform == "darwin":
        return "1:none", "avfoundation"
    if platform.startswith("win"):
        return "desktop", "gdigrab"
    raise MediaCaptureError(f"screen capture is not supported on {platform}")


class ScreenCapture(MediaCapture):
    """
    Capture the local display through FFmpeg via aiortc's ``MediaPlayer``.
    """

    def __init__(
        self,
        *,
        device: Optional[str] = None,
        format: Optional[str] = None,
        framerate: int = 15,
        video_size: Optional[str] = None,
    ) -> None:
        self.device = device
        self.format = format
        self.framerate = framerate
        self.video_size = video_size

    def _player_arguments(self) -> Tuple[str, str, Dict[str, str]]:
        if self.device and self.format:
            device, fmt = self.device, self.format
        else:
            default_device, default_format = default_capture_source()
            device, fmt = self.device or default_device, self.format or default_format
        options = {"framerate": str(self.framerate)}
        if self.video_size:
            options["video_size"] = self.video_size
        return device, fmt, options

    async def acquire_display_media(self, *, video: bool = True, audio: bool = True) -> MediaStream:
        device, fmt, options = self._player_arguments()
        LOG.info("Opening display capture %s (%s)", device, fmt)
        try:
            player = await asyncio.to_thread(MediaPlayer, device, format=fmt, options=options)
        except PermissionError as exc:
            raise PermissionDenied(str(exc)) from exc
        except Exception as exc:
            raise MediaCaptureError(str(exc)) from exc

        tracks: List[MediaTrack] = []
        if video and player.video is not None:
            tracks.append(AiortcTrack(player.video))
        if audio and player.audio is not None:
            tracks.append(AiortcTrack(player.audio))
        if not tracks:
            raise MediaCaptureError(f"capture device {device} produced no usable tracks")

        stream = MediaStream(tracks, stream_id=f"display-{device}")
        for track in tracks:
            track.source.on("ended", stream.notify_ended)
        return stream


class RecorderBinding(MediaBinding):
    """
    Record the rendered stream to a file with aiortc's ``MediaRecorder``.

    Tracks arriving within ``start_delay`` seconds of the first one are
    recorded together; the recorder cannot accept tracks once started.
    """

    def __init__(self, manager: Any, path: str, *, start_delay: float = 0.5) -> None:
        super().__init__(manager)
        self.path = path
        self.start_delay = max(0.0, float(start_delay))
        self._recorder: Optional[MediaRecorder] = None
        self._started = False
        self._start_task: Optional[asyncio.Future] = None
        self._tasks: Set[asyncio.Future] = set()

    def _attach_track(self, track: MediaTrack, *, muted: bool) -> None:
        if muted:
            return
        if self._started:
            LOG.warning("Recorder already running; ignoring late %s track", track.kind)
            return
        if self._recorder is None:
            self._recorder = MediaRecorder(self.path)
        source = track.source if isinstance(track, AiortcTrack) else track
        self._recorder.addTrack(source)
        if self._start_task is None:
            self._start_task = self._schedule(self._start_later(self._recorder))

    async def _start_later(self, recorder: MediaRecorder) -> None:
        await asyncio.sleep(self.start_delay)
        if recorder is not self._recorder:
            return
        await recorder.start()
        self._started = True
        LOG.info("Recording remote screen to %s", self.path)

    def _detach(self) -> None:
        recorder, self._recorder = self._recorder, None
        task, self._start_task = self._start_task, None
        if task is not None and not task.done():
            task.cancel()
        started, self._started = self._started, False
        if recorder is not None and started:
            self._schedule(self._stop(recorder))

    async def _stop(self, recorder: MediaRecorder) -> None:
        await recorder.stop()
        LOG.info("Recording saved to %s", self.path)

    def _schedule(self, coro: Awaitable[None]) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error("Recorder task failed", exc_info=exc)

    async def _wait_released(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = [
    "AiortcConnection",
    "AiortcTrack",
    "AiortcTransport",
    "RecorderBinding",
    "ScreenCapture",
    "build_configuration",
    "default_capture_source",
]
