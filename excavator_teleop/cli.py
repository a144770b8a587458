"""Command-line interface for excavator-teleop."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import TeleopApp
from .config import ConfigurationError, load_config, save_config
from .core import Role

LOGGER = logging.getLogger(__name__)

SECRET_KEYS = frozenset({"password"})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Remote excavator teleoperation data plane",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    for role in Role:
        role_parser = subparsers.add_parser(
            role.value, help=f"Run the {role.value} side of the link"
        )
        role_parser.add_argument(
            "machine_id", help="Identifier of the machine to operate"
        )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )
    subparsers.add_parser(
        "init-config", help="Write the resolved configuration to the config path"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"Invalid configuration in {args.config}: {exc}", file=sys.stderr)
        return 2

    if args.command in (Role.OPERATOR.value, Role.MACHINE.value):
        machine_id = args.machine_id.strip()
        if not machine_id:
            parser.error("machine_id cannot be empty")
        TeleopApp.start(Role(args.command), machine_id, config)
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key in SECRET_KEYS and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "init-config":
        save_config(config)
        print(f"Configuration written to {config.path!s}")
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
