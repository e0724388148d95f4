"""
Tests for the command-line entry point.
"""

import shlex
import socket
import sys
from unittest.mock import patch

import pytest

from llm_gateway import cli
from llm_gateway.config import GatewaySettings
from llm_gateway.logging import StructuredLogger

from tests._testkit import FAKE_BACKEND


@pytest.fixture
def quiet_log():
    return StructuredLogger("test_gateway_cli")


class TestParser:
    def test_defaults_are_none(self):
        args = cli.build_parser().parse_args([])

        assert args.port is None
        assert args.cwd is None
        assert args.log_level is None

    def test_positional_port_and_options(self):
        args = cli.build_parser().parse_args(["9000", "--cwd", "/srv/app", "--log-level", "debug"])

        assert args.port == 9000
        assert args.cwd == "/srv/app"
        assert args.log_level == "DEBUG"

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.build_parser().parse_args(["--version"])

        assert exc_info.value.code == 0
        assert "llm-gateway" in capsys.readouterr().out


class TestChecks:
    def test_backend_found(self, quiet_log):
        settings = GatewaySettings(backend_command=(sys.executable, str(FAKE_BACKEND)))

        assert cli.check_backend(settings, quiet_log) is True

    def test_backend_missing(self, quiet_log):
        settings = GatewaySettings(backend_command=("definitely-not-a-claude-cli",))

        assert cli.check_backend(settings, quiet_log) is False

    def test_port_in_use(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen(1)
            port = sock.getsockname()[1]

            assert cli.port_available("127.0.0.1", port) is False

    def test_port_free(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]

        assert cli.port_available("127.0.0.1", port) is True


class TestMain:
    @pytest.fixture(autouse=True)
    def no_dotenv(self):
        with patch.object(cli, "load_env", return_value=False), patch.object(cli, "configure_logging") as configure:
            configure.return_value = StructuredLogger("test_gateway_cli")
            yield

    def test_missing_backend_exits_nonzero(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GATEWAY_BACKEND_COMMAND", "definitely-not-a-claude-cli")

        with patch.object(cli.uvicorn, "run") as run:
            assert cli.main(["8123", "--cwd", str(tmp_path)]) == 1
            run.assert_not_called()

    def test_invalid_configuration(self, monkeypatch):
        monkeypatch.setenv("GATEWAY_INACTIVITY_TIMEOUT", "-5")

        assert cli.main([]) == 2

    def test_starts_server(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GATEWAY_BACKEND_COMMAND", shlex.join([sys.executable, str(FAKE_BACKEND)]))

        with patch.object(cli.uvicorn, "run") as run, patch.object(cli, "port_available", return_value=True):
            assert cli.main(["8123", "--cwd", str(tmp_path), "--session-file", str(tmp_path / "s.json")]) == 0

        run.assert_called_once()
        _, kwargs = run.call_args
        assert kwargs["port"] == 8123
        assert kwargs["host"] == "127.0.0.1"
        app = run.call_args.args[0]
        assert app.state.settings.cwd == str(tmp_path)
        assert app.state.settings.session_file == tmp_path / "s.json"

    def test_port_taken_exits(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GATEWAY_BACKEND_COMMAND", shlex.join([sys.executable, str(FAKE_BACKEND)]))

        with patch.object(cli.uvicorn, "run") as run, patch.object(cli, "port_available", return_value=False):
            assert cli.main(["8123", "--cwd", str(tmp_path)]) == 1

        run.assert_not_called()
