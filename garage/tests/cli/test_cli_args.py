from __future__ import annotations

from pathlib import Path

import pytest

from garage.cli.args import DEFAULT_LOG_FILE, parse_args


def test_controller_toggle_flags():
    args = parse_args(["controller", "--config", "g.yml", "--toggle", "--wait-s", "3"])
    assert args.cmd == "controller"
    assert args.config == Path("g.yml")
    assert args.toggle is True
    assert args.wait_s == 3.0
    assert args.log_file == DEFAULT_LOG_FILE
    assert args.trace is None


@pytest.mark.parametrize("cmd", ["server", "relay", "agent"])
def test_service_commands_share_common_flags(cmd):
    args = parse_args([cmd, "--config", "g.yml", "--trace", "t.jsonl", "-v"])
    assert args.cmd == cmd
    assert args.trace == Path("t.jsonl")
    assert args.verbose is True


def test_config_is_required():
    with pytest.raises(SystemExit):
        parse_args(["server"])


def test_subcommand_is_required():
    with pytest.raises(SystemExit):
        parse_args([])
