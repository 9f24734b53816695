import logging

import pytest

from nexzi.config import NexziConfig, load_config
from nexzi.negotiation.machine import BusyPolicy
from nexzi.negotiation.policy import BufferUntilGatheringComplete, StreamImmediately


def test_default_profile_from_packaged_file() -> None:
    config = load_config(environ={})

    assert config.profile == "default"
    assert config.relay.port == 8765
    assert config.transport.stun_server == "stun:stun.l.google.com:19302"
    assert config.negotiation.candidate_policy is StreamImmediately
    assert config.negotiation.busy is BusyPolicy.REJECT
    assert config.help.api_key is None


def test_named_profiles() -> None:
    manual = load_config(profile="manual", environ={})
    lan = load_config(profile="lan", environ={})

    assert manual.negotiation.candidate_policy is BufferUntilGatheringComplete
    assert lan.relay.host == "0.0.0.0"
    assert lan.negotiation.busy is BusyPolicy.REPLACE
    assert lan.transport.iter_ice_servers()[0]["urls"] == [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    ]


def test_environment_overrides() -> None:
    config = load_config(
        environ={
            "NEXZI_RELAY_URL": "wss://relay.example/signal",
            "NEXZI_TURN_SERVER": "turn:turn.example:3478",
            "API_KEY": "legacy-key",
        }
    )

    assert config.relay.url == "wss://relay.example/signal"
    assert config.transport.iter_ice_servers()[-1] == {"urls": ["turn:turn.example:3478"]}
    assert config.help.api_key == "legacy-key"


def test_unknown_profile_is_an_error() -> None:
    with pytest.raises(ValueError):
        load_config(profile="does-not-exist", environ={})


def test_custom_file_and_validation(tmp_path, caplog) -> None:
    path = tmp_path / "profiles.yaml"
    path.write_text(
        "profiles:\n"
        "  default:\n"
        "    negotiation:\n"
        "      gathering-timeout: 3\n"
        "    colour: blue\n"
        "  broken:\n"
        "    negotiation:\n"
        "      variant: carrier-pigeon\n",
        encoding="utf-8",
    )

    with caplog.at_level(logging.WARNING, logger="nexzi.config"):
        config = load_config(path, environ={})

    assert config.negotiation.gathering_timeout == 3
    assert "colour" in caplog.text
    with pytest.raises(ValueError):
        load_config(path, profile="broken", environ={})


def test_missing_explicit_file_raises(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml", environ={})


def test_defaults_without_file() -> None:
    config = NexziConfig().validate()

    assert config.negotiation.variant == "stream-immediately"
    assert config.relay.url.endswith("/signal")
