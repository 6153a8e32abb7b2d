# garage/cli/args.py
from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional

DEFAULT_LOG_FILE = Path("logs") / "garage.log"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="garage", description="Remote garage door link.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", required=True, type=Path, help="YAML configuration file.")
    common.add_argument(
        "--log-file",
        type=Path,
        default=DEFAULT_LOG_FILE,
        help=f"Application log file (default: {DEFAULT_LOG_FILE}).",
    )
    common.add_argument("--trace", type=Path, default=None, help="Append command events as JSON lines to this file.")
    common.add_argument("-v", "--verbose", action="store_true", help="Debug output on the console.")

    pc = sub.add_parser("controller", parents=[common], help="Remote client: toggle the door, watch link health.")
    pc.add_argument("--toggle", action="store_true", help="Send one toggle once the link is up, then exit.")
    pc.add_argument(
        "--wait-s",
        type=float,
        default=10.0,
        help="With --toggle: how long to wait for the link (default: 10).",
    )

    sub.add_parser("server", parents=[common], help="Command server with a directly attached actuator.")
    sub.add_parser("relay", parents=[common], help="Relay between controllers and actuator agents.")
    sub.add_parser("agent", parents=[common], help="Actuator agent that dials a relay.")

    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)
