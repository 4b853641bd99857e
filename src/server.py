"""Entry point for running the Kepler Chat API server.

Usage:
    kepler-chat [--host HOST] [--port PORT]

Host, port and log level default to the `server` section of the loaded
configuration. Runs a single uvicorn worker: the generation registry is
in-process state.
"""

import argparse

from src.config import get_config


def parse_serve_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse serve-mode arguments (host, port), defaulting from config."""
    server = get_config().server
    parser = argparse.ArgumentParser(description="Kepler Chat API server")
    parser.add_argument("--host", default=server.host, help="Bind address")
    parser.add_argument("--port", type=int, default=server.port, help="Listen port")
    parser.add_argument("--log-level", default=server.log_level, help="uvicorn log level")
    return parser.parse_args(args)


def main(argv: list[str] | None = None) -> None:
    serve_args = parse_serve_args(argv)
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host=serve_args.host,
        port=serve_args.port,
        workers=1,
        log_level=serve_args.log_level,
    )


if __name__ == "__main__":
    main()
