"""
Short help texts generated by the Gemini ``generateContent`` REST API.

The service fails open: without an API key, on transport errors and on
malformed responses it returns a static explanation instead of raising.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from ..config import HelpConfig

LOG = logging.getLogger(__name__)

FALLBACK_TIPS = (
    "AI features are currently unavailable. Your 'Address' is a unique code to share "
    "with a trusted person to start a remote session."
)


class HelpTopic(str, Enum):
    SESSION_ID = "session_id"
    HOW_TO_CONNECT = "how_to_connect"


PROMPTS: Dict[HelpTopic, str] = {
    HelpTopic.SESSION_ID: (
        "You are a helpful assistant for a remote desktop application called RemoteNexzi. "
        'A user has asked what their "Address" or "Session ID" is. '
        "Explain in a simple, non-technical paragraph what this ID is used for. "
        "Mention that it's a unique, temporary code they can share with someone they trust "
        "to allow that person to view their screen. "
        "Emphasize that they should treat it like a password and only share it with people they know. "
        "Keep the tone friendly and reassuring."
    ),
    HelpTopic.HOW_TO_CONNECT: (
        "You are a helpful assistant for a remote desktop application called RemoteNexzi. "
        "Explain in a few short, non-technical steps how to view someone else's screen: "
        "ask them for their 9 digit Address, enter it and press connect, then wait for "
        "them to accept the incoming request. "
        "Mention that a new Address is issued after every session. "
        "Keep the tone friendly and reassuring."
    ),
}


def resolve_topic(value: object) -> HelpTopic:
    try:
        return HelpTopic(str(value or "").strip().lower().replace("-", "_"))
    except ValueError:
        raise ValueError(f"Unknown help topic '{value}'") from None


class TipsService:
    def __init__(self, config: Optional[HelpConfig] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.config = config or HelpConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.config.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_tips(self, topic: HelpTopic | str) -> str:
        """
        Return a help paragraph for ``topic``.

        Unknown topics raise ``ValueError``; every other failure yields
        :data:`FALLBACK_TIPS`.
        """

        resolved = resolve_topic(topic)
        if not self.enabled:
            LOG.debug("No API key configured; returning fallback tips")
            return FALLBACK_TIPS

        body = {
            "contents": [{"parts": [{"text": PROMPTS[resolved]}]}],
            "generationConfig": {
                "temperature": self.config.temperature,
                "topP": self.config.top_p,
            },
        }
        try:
            response = await self._get_client().post(
                f"/models/{self.config.model}:generateContent",
                params={"key": self.config.api_key},
                json=body,
            )
            response.raise_for_status()
            text = _extract_text(response.json())
        except httpx.HTTPError as exc:
            LOG.warning("Help tips request failed: %s", exc)
            return FALLBACK_TIPS
        except ValueError as exc:
            LOG.warning("Help tips response was malformed: %s", exc)
            return FALLBACK_TIPS
        return text


def _extract_text(payload: Any) -> str:
    try:
        parts = payload["candidates"][0]["content"]["parts"]
        text = "".join(str(part.get("text") or "") for part in parts)
    except (KeyError, IndexError, TypeError, AttributeError) as exc:
        raise ValueError("response has no candidate text") from exc
    text = text.strip()
    if not text:
        raise ValueError("response text is empty")
    return text


__all__ = ["FALLBACK_TIPS", "HelpTopic", "PROMPTS", "TipsService", "resolve_topic"]
