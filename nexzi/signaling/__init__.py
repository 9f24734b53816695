"""
Signaling protocol: message types, wire codec and channels.
"""

from __future__ import annotations

from .channel import InMemorySignalingChannel, SignalingChannel
from .messages import Answer, Busy, Candidate, Disconnect, Offer, SignalingMessage

__all__ = [
    "Answer",
    "Busy",
    "Candidate",
    "Disconnect",
    "InMemorySignalingChannel",
    "Offer",
    "SignalingChannel",
    "SignalingMessage",
]
