"""
Ephemeral session addresses.

An address is a 9 digit numeric string that routes signaling messages to one
local negotiation instance.  Addresses are unauthenticated and only unique
probabilistically; the generator additionally refuses to hand out the same
value twice within one process so stale messages for a torn down session
cannot reach its successor.
"""

from __future__ import annotations

import random
import re
import threading
from typing import Optional, Set

ADDRESS_MIN = 100_000_000
ADDRESS_MAX = 999_999_999
ADDRESS_DIGITS = 9

_ADDRESS_RE = re.compile(r"^\d{9}$")


class AddressGenerator:
    """
    Draw addresses uniformly from the 9 digit range without repeats.

    Every issued address is remembered for the lifetime of the generator; the
    set grows by one entry per generated address and is never pruned.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.SystemRandom()
        self._issued: Set[str] = set()
        self._lock = threading.Lock()

    def generate(self) -> str:
        with self._lock:
            while True:
                candidate = str(self._rng.randint(ADDRESS_MIN, ADDRESS_MAX))
                if candidate not in self._issued:
                    self._issued.add(candidate)
                    return candidate


def is_valid_address(value: object) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def normalise_address(value: str) -> str:
    """
    Strip the grouping whitespace users paste along with an address.
    """

    return re.sub(r"\s+", "", str(value or ""))


def format_address(address: str) -> str:
    """Render ``123456789`` as ``123 456 789``."""

    return " ".join(address[i : i + 3] for i in range(0, len(address), 3))


__all__ = [
    "ADDRESS_DIGITS",
    "ADDRESS_MAX",
    "ADDRESS_MIN",
    "AddressGenerator",
    "format_address",
    "is_valid_address",
    "normalise_address",
]
