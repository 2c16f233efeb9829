"""Run the Threadline HTTP server: ``python -m threadline``."""

from __future__ import annotations

import argparse

import uvicorn

from threadline.api import ServerSettings, configure_logging, create_app


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="threadline", description=__doc__)
    parser.add_argument("--host", help="bind address (THREADLINE_HOST)")
    parser.add_argument("--port", type=int, help="bind port (THREADLINE_PORT)")
    parser.add_argument("--db-path", help="SQLite database path (THREADLINE_DB_PATH)")
    parser.add_argument("--log-json", action="store_true", default=None, help="JSON log lines")
    args = parser.parse_args(argv)

    overrides = {k: v for k, v in vars(args).items() if v is not None}
    settings = ServerSettings(**overrides)
    configure_logging(settings.log_level, json=settings.log_json)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
