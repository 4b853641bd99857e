"""Tests for the server entry point."""

from unittest.mock import patch

from src.config import KeplerConfig
from src.server import main, parse_serve_args


def _config(**server):
    return KeplerConfig(server=server)


class TestParseServeArgs:

    def test_defaults_come_from_config(self):
        with patch("src.server.get_config", return_value=_config(host="0.0.0.0", port=9100)):
            args = parse_serve_args([])
        assert (args.host, args.port, args.log_level) == ("0.0.0.0", 9100, "info")

    def test_flags_override_config(self):
        with patch("src.server.get_config", return_value=_config()):
            args = parse_serve_args(["--host", "127.0.0.2", "--port", "8123", "--log-level", "debug"])
        assert (args.host, args.port, args.log_level) == ("127.0.0.2", 8123, "debug")


class TestMain:

    def test_runs_single_worker(self):
        with patch("src.server.get_config", return_value=_config()), \
                patch("uvicorn.run") as run:
            main(["--port", "8001"])

        run.assert_called_once_with(
            "src.api.main:app", host="127.0.0.1", port=8001, workers=1, log_level="info"
        )
