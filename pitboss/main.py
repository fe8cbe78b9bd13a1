"""
PitBoss — Gateway entry point.

Starts the resident command gateway in front of the remediation
governor and serves until ``shutdown``, end of input, or a signal.

Usage:
    pitboss-gateway [--config config/default.yaml] [--transport stdio|tcp]
                    [--host 127.0.0.1] [--port 7411] [--log-level INFO]

stdout carries only protocol lines; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Any

import structlog

from pitboss.config import PitBossConfig, load_config
from pitboss.gateway.server import CommandGateway
from pitboss.telemetry.logging import setup_logging

logger = structlog.get_logger()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pitboss-gateway",
        description="PitBoss remediation governor: line-delimited JSON command gateway",
    )
    parser.add_argument(
        "--config",
        default=os.environ.get("PITBOSS_CONFIG_PATH", "config/default.yaml"),
        help="YAML configuration file (default: $PITBOSS_CONFIG_PATH or config/default.yaml)",
    )
    parser.add_argument("--transport", choices=("stdio", "tcp"), help="Override gateway.transport")
    parser.add_argument("--host", help="TCP bind address")
    parser.add_argument("--port", type=int, help="TCP port (0 picks a free one)")
    parser.add_argument("--log-level", help="Override logging.level")
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    gateway: dict[str, Any] = {}
    if args.transport:
        gateway["transport"] = args.transport
    if args.host:
        gateway["host"] = args.host
    if args.port is not None:
        gateway["port"] = args.port

    overrides: dict[str, Any] = {}
    if gateway:
        overrides["gateway"] = gateway
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}
    return overrides


async def main(config: PitBossConfig) -> int:
    gateway = CommandGateway(config)
    logger.info(
        "pitboss_starting",
        transport=config.gateway.transport,
        instance_id=config.instance_id,
        pid=os.getpid(),
    )
    return await gateway.run()


def cli(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    config = load_config(args.config, overrides=_overrides(args))
    setup_logging(config.logging, instance_id=config.instance_id)
    sys.exit(asyncio.run(main(config)))


if __name__ == "__main__":
    cli()
