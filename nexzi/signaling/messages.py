"""
Signaling messages and their JSON wire codec.

Wire shape::

    {"type": "offer" | "answer" | "candidate" | "disconnect" | "busy",
     "target": "<address>", "from": "<address>",
     "offer" | "answer": {"type": ..., "sdp": ...},
     "candidate": {"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}}

``from`` is optional only on ``disconnect``; when present the receiver ignores
a disconnect that does not come from its current peer.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from ..errors import InvalidPayload
from ..rtc.webrtc import ICECandidate, SessionDescription

OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"
DISCONNECT = "disconnect"
BUSY = "busy"

MESSAGE_TYPES = (OFFER, ANSWER, CANDIDATE, DISCONNECT, BUSY)


@dataclass(frozen=True)
class Offer:
    target: str
    sender: str
    offer: SessionDescription
    type: str = OFFER


@dataclass(frozen=True)
class Answer:
    target: str
    sender: str
    answer: SessionDescription
    type: str = ANSWER


@dataclass(frozen=True)
class Candidate:
    target: str
    sender: str
    candidate: ICECandidate
    type: str = CANDIDATE


@dataclass(frozen=True)
class Disconnect:
    target: str
    sender: Optional[str] = None
    type: str = DISCONNECT


@dataclass(frozen=True)
class Busy:
    """Sent back to a caller whose offer reached an already active peer."""

    target: str
    sender: str
    type: str = BUSY


SignalingMessage = Union[Offer, Answer, Candidate, Disconnect, Busy]


def message_to_dict(message: SignalingMessage) -> dict:
    payload: dict = {"type": message.type, "target": message.target}
    if isinstance(message, Disconnect):
        if message.sender:
            payload["from"] = message.sender
        return payload
    payload["from"] = message.sender
    if isinstance(message, Offer):
        payload["offer"] = message.offer.to_dict()
    elif isinstance(message, Answer):
        payload["answer"] = message.answer.to_dict()
    elif isinstance(message, Candidate):
        payload["candidate"] = message.candidate.to_dict()
    return payload


def message_from_dict(payload: Any) -> SignalingMessage:
    if not isinstance(payload, dict):
        raise InvalidPayload("signaling message must be an object")
    msg_type = payload.get("type")
    target = payload.get("target")
    if not isinstance(target, str) or not target:
        raise InvalidPayload("signaling message requires a target")
    sender = payload.get("from")
    if msg_type == DISCONNECT:
        # older peers omit the sender
        return Disconnect(target=target, sender=sender if isinstance(sender, str) and sender else None)

    if not isinstance(sender, str) or not sender:
        raise InvalidPayload(f"{msg_type!r} message requires a sender")

    try:
        if msg_type == OFFER:
            return Offer(target=target, sender=sender, offer=SessionDescription.from_dict(payload.get("offer")))
        if msg_type == ANSWER:
            return Answer(target=target, sender=sender, answer=SessionDescription.from_dict(payload.get("answer")))
        if msg_type == CANDIDATE:
            return Candidate(target=target, sender=sender, candidate=ICECandidate.from_dict(payload.get("candidate")))
    except (TypeError, ValueError) as exc:
        raise InvalidPayload(str(exc)) from exc
    if msg_type == BUSY:
        return Busy(target=target, sender=sender)
    raise InvalidPayload(f"unsupported signaling message type {msg_type!r}")


def encode_message(message: SignalingMessage) -> str:
    return json.dumps(message_to_dict(message), separators=(",", ":"))


def decode_message(raw: str) -> SignalingMessage:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidPayload("signaling frame is not valid JSON") from exc
    return message_from_dict(payload)


__all__ = [
    "ANSWER",
    "Answer",
    "BUSY",
    "Busy",
    "CANDIDATE",
    "Candidate",
    "DISCONNECT",
    "Disconnect",
    "MESSAGE_TYPES",
    "OFFER",
    "Offer",
    "SignalingMessage",
    "decode_message",
    "encode_message",
    "message_from_dict",
    "message_to_dict",
]
