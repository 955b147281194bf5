from __future__ import annotations

import argparse
import sys
from collections.abc import Callable, Mapping

from cvmfs_deploy.common import CiToolError


def command_map() -> dict[str, Callable[[], None]]:
    """Deploy and dry-run entry points, keyed by CLI name."""
    from cvmfs_deploy.deploy import main as deploy
    from cvmfs_deploy.detect_changes import main as detect_changes

    return {
        "deploy": deploy,
        "detect-changes": detect_changes,
    }


def build_parser(commands: Mapping[str, Callable[[], None]]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cvmfs-deploy",
        description="Install changed Galaxy tools into CVMFS.",
    )
    parser.add_argument("command", choices=sorted(commands.keys()))
    return parser


def run_command(command: str, commands: Mapping[str, Callable[[], None]]) -> None:
    """Dispatch `command`; tests hand in their own registry."""
    commands[command]()


def main(argv: list[str] | None = None) -> None:
    # Parser choices and dispatch share one registry.
    commands = command_map()
    parser = build_parser(commands)
    args = parser.parse_args(argv)

    try:
        run_command(args.command, commands)
    except CiToolError as exc:
        print(f"# ERROR: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
