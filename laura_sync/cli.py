"""Command-line interface for laura-sync."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .client import CameraSyncClient
from .config import load_config, mask_secret, require_configured
from .core.errors import ConfigError, IdentityError
from .registration import perform_registration

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

_SECRET_OPTIONS = {("cloud", "api_key")}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="laura-sync", description="Laura cloud synchronization client for cameras"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Run the sync client until interrupted")

    register_parser = subparsers.add_parser(
        "register", help="Register this camera and print its durable id"
    )
    register_parser.add_argument(
        "--save", action="store_true", help="Write the durable id back to the config file"
    )

    subparsers.add_parser("show-config", help="Print the resolved configuration and exit")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        try:
            require_configured(config)
        except ConfigError as exc:
            for problem in exc.problems:
                print(f"config error: {problem}", file=sys.stderr)
            return EXIT_CONFIG
        CameraSyncClient.start(config)
        return EXIT_OK

    if args.command == "register":
        try:
            updated = perform_registration(config, save=args.save)
        except ConfigError as exc:
            for problem in exc.problems:
                print(f"config error: {problem}", file=sys.stderr)
            return EXIT_CONFIG
        except IdentityError as exc:
            LOGGER.error("Registration failed: %s", exc)
            return EXIT_FAILURE
        print(updated.camera.durable_id)
        return EXIT_OK

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if (section, key) in _SECRET_OPTIONS:
                    value = mask_secret(value)
                print(f"{key} = {value}")
            print()
        return EXIT_OK

    LOGGER.error("Unknown command: %s", args.command)
    return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
