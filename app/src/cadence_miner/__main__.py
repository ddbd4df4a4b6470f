"""
Main entry point for running the miner scheduler.

Usage:
    python -m cadence_miner [--config config.toml] [--blocktime 2m] [--retry 30s]
                            [--ws wss://localhost:19109/ws] [--ca rpc.cert]
                            [--cert client.pem] [--key client-key.pem]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import structlog

from .config import MinerConfig, parse_duration
from .scheduler import StartupError, run_scheduler
from .tls import CredentialsError

logger = structlog.get_logger(__name__)


def configure_logging(level: str) -> None:
    """Configure structured logging."""
    level_no = logging.getLevelName(level.upper())
    if not isinstance(level_no, int):
        raise ValueError(f"unknown log level: {level}")

    logging.basicConfig(level=logging.WARNING, format="[%(levelname)s] %(name)s: %(message)s")
    for name in ("websockets", "apscheduler"):
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def _duration(value: str):
    try:
        return parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cadence_miner",
        description="Mine blocks on a remote node at a target cadence",
    )
    parser.add_argument("--config", type=Path, help="TOML config file; flags override its values")
    parser.add_argument("--blocktime", type=_duration, help="target block duration (default 2m)")
    parser.add_argument("--retry", type=_duration, help="duration to wait before retries after errors (default 30s)")
    parser.add_argument("--ws", help="websocket endpoint (default wss://localhost:19109/ws)")
    parser.add_argument("--ca", help="path to node certificate authority")
    parser.add_argument("--cert", help="path to client certificate")
    parser.add_argument("--key", help="path to client certificate key")
    parser.add_argument("--log-level", default="info", help="log level (default info)")
    return parser


def load_config(args: argparse.Namespace) -> MinerConfig:
    """Build the configuration from an optional file plus command-line overrides."""
    if args.config is not None:
        if not args.config.exists():
            raise ValueError(f"config file not found: {args.config}")
        config = MinerConfig.load(args.config)
    else:
        config = MinerConfig()

    return config.with_overrides(
        endpoint=args.ws,
        ca=args.ca,
        cert=args.cert,
        key=args.key,
        target_block_time=args.blocktime,
        retry_duration=args.retry,
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        configure_logging(args.log_level)
    except ValueError as e:
        parser.error(str(e))

    try:
        config = load_config(args)
    except (ValueError, OSError) as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)

    logger.info(
        "Starting miner scheduler",
        endpoint=config.node.endpoint,
        target_block_time=config.timing.target_block_time.total_seconds(),
        retry_duration=config.timing.retry_duration.total_seconds(),
    )

    try:
        asyncio.run(run_scheduler(config))
    except (CredentialsError, StartupError) as e:
        logger.error("Miner scheduler failed to start", error=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
