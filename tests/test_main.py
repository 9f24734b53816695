import pytest

from nexzi.main import parse_args


def test_view_command_arguments() -> None:
    args = parse_args(["--profile", "lan", "view", "123456789", "--record", "remote.mp4"])

    assert args.profile == "lan"
    assert args.command == "view"
    assert args.address == "123456789"
    assert args.record == "remote.mp4"


def test_tips_topic_is_restricted() -> None:
    assert parse_args(["tips", "how_to_connect"]).topic == "how_to_connect"
    with pytest.raises(SystemExit):
        parse_args(["tips", "weather"])


def test_command_is_required() -> None:
    with pytest.raises(SystemExit):
        parse_args([])
