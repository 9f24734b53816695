"""
nexzi: peer-to-peer screen sharing.

The package hosts the negotiation core (ephemeral addresses, the offer/answer
state machine and its signaling protocol) together with the pieces needed to
run it for real: an aiortc media backend, a FastAPI signaling relay and a
small command line client.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
