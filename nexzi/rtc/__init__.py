"""
WebRTC helpers.
"""

from __future__ import annotations

from .ice import DEFAULT_STUN_SERVER, TransportConfig
from .webrtc import ICECandidate, MediaCapture, MediaStream, MediaTrack, MediaTransport, SessionDescription

__all__ = [
    "DEFAULT_STUN_SERVER",
    "ICECandidate",
    "MediaCapture",
    "MediaStream",
    "MediaTrack",
    "MediaTransport",
    "SessionDescription",
    "TransportConfig",
]
