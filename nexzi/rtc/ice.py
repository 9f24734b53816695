"""
ICE server configuration handed to the media transport.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

DEFAULT_STUN_SERVER = "stun:stun.l.google.com:19302"


@dataclass
class TransportConfig:
    """
    Parameters applied to every peer connection the core creates.

    At least one STUN server is always present; a TURN relay is optional and
    carries its own credentials.
    """

    stun_server: Optional[str] = DEFAULT_STUN_SERVER
    turn_server: Optional[str] = None
    turn_username: Optional[str] = None
    turn_credential: Optional[str] = None
    extra_servers: List[str] = field(default_factory=list)

    def iter_ice_servers(self) -> List[Dict[str, object]]:
        """
        Return the ICE server list in the browser ``RTCConfiguration`` shape.
        """

        servers: List[Dict[str, object]] = []
        stun_urls = [self.stun_server or DEFAULT_STUN_SERVER, *self.extra_servers]
        servers.append({"urls": stun_urls})
        if self.turn_server:
            turn: Dict[str, object] = {"urls": [self.turn_server]}
            if self.turn_username:
                turn["username"] = self.turn_username
            if self.turn_credential:
                turn["credential"] = self.turn_credential
            servers.append(turn)
        return servers
