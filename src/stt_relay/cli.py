"""Command-line entry point for the relay.

Usage:
    stt-relay --engine ./model.py --port 3001

Every flag falls back to its STT_RELAY_* environment variable.
"""

import argparse
import logging
import shlex
import sys
from pathlib import Path

import uvicorn
from uvicorn.config import LOG_LEVELS

from stt_relay.config import RelayConfig, normalize_suffix
from stt_relay.server import create_app_from_config

logger = logging.getLogger("stt_relay")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Relay WebSocket audio chunks to a line-protocol inference engine",
    )
    parser.add_argument("--host", help="Address to bind (default: ::)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: 3001)")
    parser.add_argument(
        "--engine",
        help="Engine command line, e.g. './model.py --device cuda' (default: ./model.py)",
    )
    parser.add_argument("--staging-dir", type=Path, help="Directory for staged chunk files")
    parser.add_argument("--suffix", help="Extension of staged chunk files (default: .webm)")
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> RelayConfig:
    """Apply CLI overrides on top of the environment config."""
    config = RelayConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.engine:
        config.engine_command = shlex.split(args.engine)
    if args.staging_dir:
        config.staging_dir = args.staging_dir.expanduser()
    if args.suffix:
        config.staged_suffix = normalize_suffix(args.suffix)
    if args.log_level:
        config.log_level = args.log_level.upper()
    return config


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=LOG_LEVELS.get(level.lower(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config = build_config(args)
    configure_logging(config.log_level)

    try:
        config.validate()
    except ValueError as e:
        logger.critical("Invalid configuration: %s", e)
        return 2

    app = create_app_from_config(config)
    logger.info("Starting relay on [%s]:%d", config.host, config.port)
    # Engine spawn happens in the app lifespan, before the socket is bound;
    # uvicorn exits the process if either fails.
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
