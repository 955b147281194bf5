"""
Script: cvmfs_deploy/common.py
What: Shared helper functions used by all `cvmfs_deploy` modules.
Doing: Wraps env reads, command execution, and CI log output.
Why: Avoids duplicated helper code.
Goal: Keep behavior and log format consistent across all helper modules.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from typing import Callable, Sequence


class CiToolError(RuntimeError):
    """Raised when a deployment step hits a known error condition."""


class TerminatedError(CiToolError):
    """Raised when the run is interrupted by SIGTERM or SIGINT."""


def optional_env(name: str, default: str = "") -> str:
    """Return an environment variable with a fallback default."""
    return os.environ.get(name, default)


def env_flag(name: str, default: bool = False) -> bool:
    """Read a `true`/`false` toggle from the environment."""
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() == "true"


def log(message: str) -> None:
    print(f"# {message}", flush=True)


def log_error(message: str) -> None:
    log(f"ERROR: {message}")


def log_debug(message: str) -> None:
    print(f"#### {message}", flush=True)


def log_command(args: Sequence[str]) -> None:
    """Echo a command the way `set -x` would, so CI logs show what ran."""
    print(f"+ {shlex.join(args)}", flush=True)


def best_effort(action: Callable[..., object], *args: object) -> None:
    """Run a diagnostic step whose own failure must not hide the real error."""
    try:
        action(*args)
    except CiToolError as exc:
        log_error(f"Diagnostic step failed: {exc}")


def run_cmd(
    args: Sequence[str],
    *,
    capture_output: bool = True,
    cwd: str | None = None,
) -> str:
    """Run a command and return stdout, raising a readable error on failure."""
    log_command(args)
    try:
        result = subprocess.run(
            list(args),
            check=True,
            text=True,
            capture_output=capture_output,
            cwd=cwd,
        )
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        stdout = (exc.stdout or "").strip()
        details = stderr or stdout or str(exc)
        raise CiToolError(f"Command failed: {shlex.join(args)}\n{details}") from exc
    except FileNotFoundError as exc:
        raise CiToolError(f"Command not found: {args[0]}") from exc

    if not capture_output:
        return ""
    return result.stdout
