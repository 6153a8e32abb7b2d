# garage/cli/main.py
from __future__ import annotations

from typing import Optional

from garage.core.config import load_config
from garage.core.errors import GarageError

from garage.cli.args import parse_args
from garage.cli.commands import (
    cmd_agent,
    cmd_controller,
    cmd_relay,
    cmd_server,
    configure_console_logging,
    configure_file_logging,
)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)

        configure_console_logging(args.verbose)
        configure_file_logging(args.log_file)

        if args.cmd == "controller":
            return cmd_controller(args, cfg)
        if args.cmd == "server":
            return cmd_server(args, cfg)
        if args.cmd == "relay":
            return cmd_relay(args, cfg)
        if args.cmd == "agent":
            return cmd_agent(args, cfg)

        return 2
    except GarageError as e:
        print(f"ERROR: {e.message}")
        if e.hint:
            print(f"Hint: {e.hint}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
