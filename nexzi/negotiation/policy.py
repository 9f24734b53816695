"""
Candidate delivery policies.

``stream-immediately`` publishes the description as soon as it is set and
trickles every local candidate as a separate message; the connection is
considered established once media arrives.  ``buffer-until-gathering-complete``
waits for ICE gathering to finish so the description embeds every candidate,
sends no candidate messages, and treats a successfully applied answer as the
end of negotiation.  The manual copy/paste exchange always uses the latter.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

STREAM_IMMEDIATELY = "stream-immediately"
BUFFER_UNTIL_GATHERING_COMPLETE = "buffer-until-gathering-complete"


@dataclass(frozen=True)
class CandidatePolicy:
    name: str
    waits_for_gathering: bool
    trickles_candidates: bool
    connects_on_answer: bool


StreamImmediately = CandidatePolicy(
    name=STREAM_IMMEDIATELY,
    waits_for_gathering=False,
    trickles_candidates=True,
    connects_on_answer=False,
)

BufferUntilGatheringComplete = CandidatePolicy(
    name=BUFFER_UNTIL_GATHERING_COMPLETE,
    waits_for_gathering=True,
    trickles_candidates=False,
    connects_on_answer=True,
)

_POLICIES: Dict[str, CandidatePolicy] = {
    STREAM_IMMEDIATELY: StreamImmediately,
    "stream": StreamImmediately,
    BUFFER_UNTIL_GATHERING_COMPLETE: BufferUntilGatheringComplete,
    "buffer": BufferUntilGatheringComplete,
    "manual": BufferUntilGatheringComplete,
}


def policy_for(name: str) -> CandidatePolicy:
    try:
        return _POLICIES[str(name or "").strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown candidate policy '{name}'") from None


__all__ = [
    "BUFFER_UNTIL_GATHERING_COMPLETE",
    "BufferUntilGatheringComplete",
    "CandidatePolicy",
    "STREAM_IMMEDIATELY",
    "StreamImmediately",
    "policy_for",
]
