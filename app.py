#!/usr/bin/env python3
"""
IcsMap - ICS asset and topology correlation engine
Entry point: reads settings from the environment, wires the app and runs it.
"""

import argparse
import logging

from config import Settings, configure_logging
from server import create_app

logger = logging.getLogger("icsmap")


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="IcsMap - ICS Asset & Topology Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5001, help="Port to bind to")
    parser.add_argument("--no-checks", action="store_true", help="Do not start the automated check daemon")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    configure_logging(settings.log_level)

    app = create_app(settings)
    parts = app.extensions["icsmap"]
    if not args.no_checks:
        parts["daemon"].start()

    logger.info("starting IcsMap on %s:%s", args.host, args.port)
    logger.info("database: %s", settings.db_path)
    logger.info("api key: %s", "enabled" if settings.api_key else "disabled")

    parts["socketio"].run(
        app,
        host=args.host,
        port=args.port,
        debug=settings.debug,
        allow_unsafe_werkzeug=settings.debug,
    )


if __name__ == "__main__":
    main()
