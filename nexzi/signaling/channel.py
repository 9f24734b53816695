"""
Signaling channel contract and the in-memory broadcast bus.

A channel delivers every published message to every current subscriber;
receivers filter by ``target`` themselves.  Implementations must keep
messages from one sender in publish order.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List

from .messages import SignalingMessage

LOG = logging.getLogger(__name__)

MessageHandler = Callable[[SignalingMessage], None]


class SignalingChannel:
    """
    Base class holding the subscriber registry.

    Subclasses implement :meth:`publish` and call :meth:`_deliver` for every
    inbound message.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscriber_counter = 0
        self._subscribers: Dict[int, MessageHandler] = {}

    def publish(self, message: SignalingMessage) -> None:
        raise NotImplementedError

    def subscribe(self, handler: MessageHandler) -> int:
        if not callable(handler):
            raise TypeError("handler must be callable")
        with self._lock:
            self._subscriber_counter += 1
            token = self._subscriber_counter
            self._subscribers[token] = handler
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _deliver(self, message: SignalingMessage) -> None:
        with self._lock:
            subscribers = dict(self._subscribers)
        for token, handler in subscribers.items():
            try:
                handler(message)
            except Exception:  # pragma: no cover - subscriber failures must not stop delivery
                LOG.exception("Signaling subscriber %s failed.", token)


class InMemorySignalingChannel(SignalingChannel):
    """
    Process-local broadcast bus.

    Messages are delivered synchronously in publish order.  While the channel
    is held, published messages are buffered and delivered on
    :meth:`release`, which lets tests reorder or delay delivery.
    """

    def __init__(self) -> None:
        super().__init__()
        self.published: List[SignalingMessage] = []
        self._held = False
        self._pending: List[SignalingMessage] = []

    def publish(self, message: SignalingMessage) -> None:
        with self._lock:
            self.published.append(message)
            if self._held:
                self._pending.append(message)
                return
        LOG.debug("Publishing %s to %s", message.type, message.target)
        self._deliver(message)

    def hold(self) -> None:
        with self._lock:
            self._held = True

    def release(self) -> None:
        with self._lock:
            self._held = False
            pending, self._pending = self._pending, []
        for message in pending:
            self._deliver(message)

    def drop_pending(self) -> List[SignalingMessage]:
        """Discard buffered messages without delivering them."""

        with self._lock:
            pending, self._pending = self._pending, []
        return pending

    def messages_for(self, address: str) -> List[SignalingMessage]:
        with self._lock:
            return [message for message in self.published if message.target == address]


__all__ = ["InMemorySignalingChannel", "MessageHandler", "SignalingChannel"]
