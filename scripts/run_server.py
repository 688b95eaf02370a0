#!/usr/bin/env python3
"""Run the topic reference API with uvicorn."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

import uvicorn

from backend.app.config import ConfigError, load_config
from backend.app.main import create_app

LOGGER = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command line arguments for the server runner.

    Returns:
        argparse.Namespace: Parsed command line arguments.
    """
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on (default: 8000)")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: repository root)",
    )
    parser.add_argument(
        "--dev",
        action="store_true",
        help="Enable DEBUG logging",
    )
    return parser.parse_args()


def main() -> int:
    """Entry point for the server runner.

    Returns:
        int: Exit status code where ``0`` indicates a clean shutdown.
    """
    args = parse_args()
    level = logging.DEBUG if args.dev else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        LOGGER.error("Unable to start server: %s", exc)
        return 1

    app = create_app(config=config)
    LOGGER.info(
        "Starting %s %s on %s:%s",
        config.service.name,
        config.service.version,
        args.host,
        args.port,
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.dev else "info")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
