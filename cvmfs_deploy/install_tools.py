"""
Script: cvmfs_deploy/install_tools.py
What: Installs every changed tool lock file into the running Galaxy.
Doing: Runs `shed-tools install` (from ephemeris) once per file through the forwarded Galaxy port.
Why: One broken tool definition must fail the whole run instead of publishing a partial install.
Goal: Either all changed tools are installed, or the run stops with server logs in the CI output.
"""

from __future__ import annotations

from typing import Sequence

from cvmfs_deploy.common import CiToolError, best_effort, log, log_error, run_cmd
from cvmfs_deploy.galaxy import GalaxyInstance


def shed_tools_args(tool_yaml: str, *, galaxy_url: str, api_key: str) -> list[str]:
    return ["shed-tools", "install", "-v", "-g", galaxy_url, "-a", api_key, "-t", tool_yaml]


def install_tools(
    tool_yamls: Sequence[str],
    galaxy: GalaxyInstance,
    *,
    galaxy_url: str,
    api_key: str,
) -> None:
    log("Installing tools")
    for tool_yaml in tool_yamls:
        log(f"Installing tools in {tool_yaml}")
        try:
            run_cmd(
                shed_tools_args(tool_yaml, galaxy_url=galaxy_url, api_key=api_key),
                capture_output=False,
            )
        except CiToolError as exc:
            # Earlier files are already installed in the open transaction; the
            # transaction abort during teardown discards them.
            log_error("Tool installation failed")
            best_effort(galaxy.show_logs)
            best_effort(galaxy.show_paths)
            raise CiToolError("Terminating build due to previous errors") from exc
