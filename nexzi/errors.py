"""
Error kinds raised by the negotiation core.

Every error carries a short ``user_message`` suitable for display; the
session manager copies it onto :attr:`nexzi.session.SessionView.error`.
"""

from __future__ import annotations

from typing import Optional


class NegotiationError(RuntimeError):
    """Base class for negotiation related errors."""

    default_message = "The connection could not be established."

    def __init__(self, detail: str = "", user_message: Optional[str] = None) -> None:
        super().__init__(detail or user_message or self.default_message)
        self.user_message = user_message or self.default_message


class PermissionDenied(NegotiationError):
    """Raised when the user refuses the screen capture."""

    default_message = "Permission to share screen was denied."


class MediaCaptureError(NegotiationError):
    """Raised when the screen capture fails for any other reason."""

    default_message = "Failed to start screen sharing."


class NegotiationFailed(NegotiationError):
    """Raised when a description or candidate cannot be produced or applied."""

    default_message = "Failed to negotiate the connection."


class InvalidPayload(NegotiationError):
    """Raised when a pasted connection code or a wire message cannot be parsed."""

    default_message = "The connection code is invalid."


class NotInitialized(NegotiationError):
    """Raised when an operation is invoked before its required prior step."""

    default_message = "There is no pending connection."


class TransportError(NegotiationError):
    """Raised when the underlying connectivity layer fails."""

    default_message = "The connection to the remote device was lost."


class SessionBusy(NegotiationError):
    """Raised when an operation needs an idle session but one is active."""

    default_message = "A session is already in progress."


__all__ = [
    "InvalidPayload",
    "MediaCaptureError",
    "NegotiationError",
    "NegotiationFailed",
    "NotInitialized",
    "PermissionDenied",
    "SessionBusy",
    "TransportError",
]
