# Socksy
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Socksy.
#
# Socksy is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Socksy CLI entry point.

Usage:
    socksy --bind-interface eth1 [--listen-address 127.0.0.1:8888] [--config PATH]

All options can also be given as environment variables in
SCREAMING_SNAKE_CASE with a SOCKSY_ prefix, e.g.
SOCKSY_BIND_INTERFACE=eth1. Command line arguments take precedence.

Exit status is 0 on a clean shutdown and 1 on a configuration,
interface, or listen error.
"""

from __future__ import annotations

import argparse
import logging
import signal
from collections.abc import Sequence

from . import __version__
from .config import DEFAULT_LOG_LEVEL, LOG_LEVELS, resolve_config, validate_interface
from .errors import ConfigurationError
from .server import SocksProxyServer

logger = logging.getLogger("socksy.cli")

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="socksy",
        description="Dirt simple SOCKS5 CONNECT proxy which binds a network interface",
        epilog=(
            "Every option can also be set as SOCKSY_<OPTION> in the environment, "
            "e.g. SOCKSY_LISTEN_ADDRESS=127.0.0.1:8888. Command line arguments win."
        ),
    )
    parser.add_argument(
        "-l",
        "--listen-address",
        default=None,
        help="Address to listen for incoming connections on (default: 127.0.0.1:8888)",
    )
    parser.add_argument(
        "-b",
        "--bind-interface",
        default=None,
        help="Name of the interface to bind to for outgoing connections",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Optional YAML config file (lower precedence than environment and CLI)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=LOG_LEVELS,
        help=f"Logging level (default: {DEFAULT_LOG_LEVEL})",
    )
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Run the proxy; returns the process exit status."""
    args = build_parser().parse_args(argv)
    cli_values = {
        "listen_address": args.listen_address,
        "bind_interface": args.bind_interface,
        "log_level": args.log_level,
    }

    try:
        config = resolve_config(cli_values, config_path=args.config)
    except ConfigurationError as exc:
        configure_logging(args.log_level or DEFAULT_LOG_LEVEL)
        logger.error("Invalid arguments or configuration: %s", exc)
        return EXIT_FAILURE

    configure_logging(config.log_level)

    try:
        validate_interface(config)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return EXIT_FAILURE

    try:
        server = SocksProxyServer(config)
    except OSError as exc:
        logger.error("Unable to listen on %s: %s", config.listen_address, exc)
        return EXIT_FAILURE

    def _shutdown(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        raise SystemExit(EXIT_SUCCESS)

    signal.signal(signal.SIGTERM, _shutdown)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
    finally:
        server.stop()
    return EXIT_SUCCESS
