"""Unit tests for CLI commands."""

from unittest import mock

import pytest
from click.testing import CliRunner

from stream_rtc.cli import cli
from stream_rtc.config import Config
from stream_rtc.exceptions import RoomNotFoundError
from stream_rtc.protocol import RoomRecord


@pytest.fixture
def runner():
    """Create a CLI runner for testing."""
    return CliRunner()


class TestSecretCommand:
    def test_prints_secret(self, runner):
        result = runner.invoke(cli, ["secret"])
        assert result.exit_code == 0
        assert len(result.output.strip()) == 43


class TestServerCommand:
    def test_uses_config_defaults(self, runner):
        """Options left out fall back to the loaded configuration."""
        config = Config()
        config.password = "from-config"
        config.port = 9100
        with mock.patch("stream_rtc.cli.get_config", return_value=config), \
                mock.patch("stream_rtc.cli.SignalingServer") as server_cls, \
                mock.patch("stream_rtc.cli.asyncio.run") as run:
            result = runner.invoke(cli, ["server", "--host", "0.0.0.0"])

        assert result.exit_code == 0
        server_cls.assert_called_once_with(password="from-config", default_max_participants=4)
        server_cls.return_value.serve.assert_called_once_with("0.0.0.0", 9100)
        run.assert_called_once()

    def test_password_option_wins(self, runner):
        with mock.patch("stream_rtc.cli.SignalingServer") as server_cls, \
                mock.patch("stream_rtc.cli.asyncio.run"):
            result = runner.invoke(cli, ["server", "--password", "cli-secret"])
        assert result.exit_code == 0
        assert server_cls.call_args.kwargs["password"] == "cli-secret"


class TestRoomsCommand:
    def test_no_rooms(self, runner):
        with mock.patch("stream_rtc.cli.asyncio.run", return_value=[]):
            result = runner.invoke(cli, ["rooms", "--server", "ws://x:1"])
        assert result.exit_code == 0
        assert "No rooms found" in result.output

    def test_lists_rooms(self, runner):
        rooms = [RoomRecord("R1", "standup", "alice", 4, participants=["alice", "bob"])]
        with mock.patch("stream_rtc.cli.asyncio.run", return_value=rooms):
            result = runner.invoke(cli, ["rooms", "--server", "ws://x:1"])
        assert result.exit_code == 0
        assert "standup" in result.output
        assert "2/4" in result.output

    def test_connection_failure_exits_nonzero(self, runner):
        with mock.patch("stream_rtc.cli.asyncio.run", side_effect=OSError("refused")):
            result = runner.invoke(cli, ["rooms", "--server", "ws://x:1"])
        assert result.exit_code == 1


class TestJoinCommand:
    def test_join_uses_configured_fanout(self, runner):
        """join builds its client with the same fan-out setting as call and answer."""
        config = Config()
        config.legacy_candidate_fanout = True
        channel = mock.MagicMock(close=mock.AsyncMock())
        with mock.patch("stream_rtc.cli.get_config", return_value=config), \
                mock.patch("stream_rtc.cli.connect_channel", mock.AsyncMock(return_value=channel)), \
                mock.patch("stream_rtc.cli.SignalingClient") as client_cls, \
                mock.patch("stream_rtc.cli.RoomClient") as room_cls:
            client_cls.return_value.close_all = mock.AsyncMock()
            room_cls.return_value.join_room = mock.AsyncMock(side_effect=RoomNotFoundError("Room standup not found"))
            room_cls.return_value.leave_room = mock.AsyncMock()
            result = runner.invoke(cli, ["join", "standup", "--server", "ws://x:1", "-u", "bob", "-p", "x"])

        assert result.exit_code == 1
        assert client_cls.call_args.kwargs["legacy_candidate_fanout"] is True
        client_cls.return_value.close_all.assert_awaited_once()
        channel.close.assert_awaited_once()


class TestHelp:
    @pytest.mark.parametrize("command", ["server", "rooms", "call", "answer", "join", "secret"])
    def test_command_help(self, runner, command):
        result = runner.invoke(cli, [command, "--help"])
        assert result.exit_code == 0
