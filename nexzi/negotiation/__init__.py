"""
Negotiation core: state machine, candidate policies and manual-exchange codes.
"""

from __future__ import annotations

from .machine import BusyPolicy, NegotiationStateMachine, PeerConnection, Phase, Role
from .policy import BufferUntilGatheringComplete, CandidatePolicy, StreamImmediately, policy_for

__all__ = [
    "BufferUntilGatheringComplete",
    "BusyPolicy",
    "CandidatePolicy",
    "NegotiationStateMachine",
    "PeerConnection",
    "Phase",
    "Role",
    "StreamImmediately",
    "policy_for",
]
