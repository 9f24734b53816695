"""
Manual-exchange connection codes.

A code is the URL-safe base64 encoding of the compact JSON form of a session
description.  Codes are only produced after ICE gathering completed, so they
carry every local candidate and no further candidate messages are needed.
"""

from __future__ import annotations

import base64
import binascii
import json
import re

from ..errors import InvalidPayload
from ..rtc.webrtc import SessionDescription

_WHITESPACE = re.compile(r"\s+")


def encode_description(description: SessionDescription) -> str:
    raw = json.dumps(description.to_dict(), separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_description(code: str, *, expected_type: str) -> SessionDescription:
    """
    Parse a pasted code back into a description of ``expected_type``.
    """

    compact = _WHITESPACE.sub("", code or "")
    if not compact:
        raise InvalidPayload("empty connection code")
    padded = compact + "=" * (-len(compact) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
        description = SessionDescription.from_dict(payload)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidPayload(f"unparseable connection code: {exc}") from exc

    if description.type != expected_type:
        raise InvalidPayload(
            f"expected an {expected_type} code, got an {description.type} code",
            user_message=f"This is not an {expected_type} code.",
        )
    return description


__all__ = ["decode_description", "encode_description"]
