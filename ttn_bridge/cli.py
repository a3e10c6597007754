"""Command-line interface for ttn-bridge."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import BridgeApp, send_led_once
from .config import load_config, save_config
from .errors import PublishError, StartupError
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Bridge a The Things Network device to a terminal control surface",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Run the bridge with the terminal control surface")
    subparsers.add_parser("listen", help="Run the bridge headless, logging state changes")

    led_parser = subparsers.add_parser("send-led", help="Send a single LED downlink and exit")
    led_parser.add_argument("state", choices=("on", "off"))

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    init_parser = subparsers.add_parser(
        "init-config", help="Write the resolved configuration to the config path"
    )
    init_parser.add_argument(
        "--force", action="store_true", help="Overwrite an existing configuration file"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (StartupError, ValueError) as exc:
        LOGGER.error("Invalid configuration in %s: %s", args.config, exc)
        return 1

    if args.command == "start":
        return BridgeApp.start(config, interactive=True)

    if args.command == "listen":
        return BridgeApp.start(config, interactive=False)

    if args.command == "send-led":
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        try:
            asyncio.run(send_led_once(config, args.state == "on"))
        except (StartupError, PublishError) as exc:
            LOGGER.error("Sending LED command failed: %s", exc)
            return 1
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "init-config":
        if config.path.exists() and not args.force:
            print(f"{config.path!s} already exists; use --force to overwrite")
            return 1
        save_config(config)
        print(f"Configuration written to {config.path!s}")
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
