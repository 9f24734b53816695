"""
Configuration loading.

Settings come from a YAML profiles file (``nexzi/configs/profiles.yaml`` by
default) and are then overridden by environment variables.  Each profile is a
partial mapping layered over the built-in defaults.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml

from .negotiation.machine import BusyPolicy
from .negotiation.policy import CandidatePolicy, policy_for
from .rtc.ice import TransportConfig

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

LOG = logging.getLogger(__name__)


def resolve_busy_policy(value: object) -> BusyPolicy:
    try:
        return BusyPolicy(str(value or "").strip().lower())
    except ValueError:
        raise ValueError(f"Unknown busy policy '{value}'") from None


@dataclass
class RelayConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    url: str = "ws://127.0.0.1:8765/signal"
    queue_size: int = 256
    ping_interval: float = 20.0
    pong_timeout: float = 40.0
    max_frame_bytes: int = 64 * 1024
    reconnect_delay: float = 2.0


@dataclass
class NegotiationConfig:
    variant: str = "stream-immediately"
    busy_policy: str = "reject"
    gathering_timeout: float = 10.0

    @property
    def candidate_policy(self) -> CandidatePolicy:
        return policy_for(self.variant)

    @property
    def busy(self) -> BusyPolicy:
        return resolve_busy_policy(self.busy_policy)


@dataclass
class CaptureConfig:
    device: Optional[str] = None
    format: Optional[str] = None
    framerate: int = 15
    video_size: Optional[str] = None


@dataclass
class HelpConfig:
    api_key: Optional[str] = None
    model: str = "gemini-2.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout: float = 15.0
    temperature: float = 0.5
    top_p: float = 0.95


@dataclass
class NexziConfig:
    profile: str = "default"
    relay: RelayConfig = field(default_factory=RelayConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    negotiation: NegotiationConfig = field(default_factory=NegotiationConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    help: HelpConfig = field(default_factory=HelpConfig)

    def validate(self) -> "NexziConfig":
        policy_for(self.negotiation.variant)
        resolve_busy_policy(self.negotiation.busy_policy)
        return self


def _apply(target: Any, values: Mapping[str, Any]) -> None:
    known = {item.name: item for item in fields(target)}
    for key, value in values.items():
        name = str(key).replace("-", "_")
        if name not in known:
            LOG.warning("Ignoring unknown configuration key '%s' on %s", key, type(target).__name__)
            continue
        current = getattr(target, name)
        if is_dataclass(current) and isinstance(value, Mapping):
            _apply(current, value)
        else:
            setattr(target, name, value)


def _apply_environment(config: NexziConfig, environ: Mapping[str, str]) -> None:
    if environ.get("NEXZI_RELAY_URL"):
        config.relay.url = environ["NEXZI_RELAY_URL"]
    if environ.get("NEXZI_STUN_SERVER"):
        config.transport.stun_server = environ["NEXZI_STUN_SERVER"]
    if environ.get("NEXZI_TURN_SERVER"):
        config.transport.turn_server = environ["NEXZI_TURN_SERVER"]
    api_key = environ.get("GEMINI_API_KEY") or environ.get("API_KEY")
    if api_key:
        config.help.api_key = api_key


def load_config(
    path: Optional[Union[str, Path]] = None,
    profile: str = "default",
    environ: Optional[Mapping[str, str]] = None,
) -> NexziConfig:
    """
    Build a :class:`NexziConfig` for ``profile``.

    A missing profiles file yields the defaults; a missing profile name is an
    error.
    """

    config_path = Path(path) if path is not None else PROFILES_PATH
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        if path is not None:
            raise
        document = {}

    profiles = document.get("profiles") or {}
    config = NexziConfig(profile=profile)
    if profiles or profile != "default":
        if profile not in profiles:
            raise ValueError(f"Unknown profile '{profile}' in {config_path}")
        _apply(config, profiles.get(profile) or {})
        config.profile = profile

    _apply_environment(config, os.environ if environ is None else environ)
    return config.validate()


__all__ = [
    "CaptureConfig",
    "HelpConfig",
    "NegotiationConfig",
    "NexziConfig",
    "RelayConfig",
    "load_config",
]
