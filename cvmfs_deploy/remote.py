"""
Script: cvmfs_deploy/remote.py
What: Manages the SSH control connection to the Stratum 0.
Doing: Starts one multiplexed master connection with a port forward, and runs remote commands and copies over it.
Why: Authenticating once keeps the many remote calls of a run fast and avoids repeated logins.
Goal: Give every deployment step one shared, explicitly closed remote session.
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Sequence, Union

from cvmfs_deploy.common import CiToolError, log, run_cmd


Command = Union[str, Sequence[str]]

DEFAULT_SOCKET_DIR = Path.home() / ".cache" / "usegalaxy-tools"
REMOTE_WORKDIR = ".local/share/usegalaxy-tools"


def remote_command(command: Command) -> str:
    """
    Turn a command into the string ssh hands to the remote shell.

    A string is sent unchanged so it can use pipes, globs and loops. A
    sequence is quoted word by word so values with spaces survive.
    """
    if isinstance(command, str):
        return command
    return shlex.join(list(command))


class SshSession:
    """One multiplexed ssh connection, addressed by its control socket."""

    def __init__(
        self,
        user: str,
        host: str,
        *,
        socket_dir: Path = DEFAULT_SOCKET_DIR,
        local_port: int = 8080,
        remote_port: int = 8080,
        remote_workdir: str = REMOTE_WORKDIR,
    ) -> None:
        self.user = user
        self.host = host
        self.socket_dir = Path(socket_dir)
        self.local_port = local_port
        self.remote_port = remote_port
        self.remote_workdir = remote_workdir

    @property
    def socket_path(self) -> Path:
        return self.socket_dir / f"ssh-tunnel-{self.user}-{self.host}.sock"

    def start(self) -> None:
        log("Starting SSH control connection to Stratum 0")
        self.socket_dir.mkdir(parents=True, exist_ok=True)
        run_cmd(
            [
                "ssh",
                "-S", str(self.socket_path),
                "-M",
                "-L", f"127.0.0.1:{self.local_port}:127.0.0.1:{self.remote_port}",
                "-Nfn",
                "-l", self.user,
                self.host,
            ],
            capture_output=False,
        )

    def stop(self) -> None:
        log("Stopping SSH control connection to Stratum 0")
        try:
            run_cmd(
                ["ssh", "-S", str(self.socket_path), "-O", "exit", "-l", self.user, self.host],
                capture_output=False,
            )
        finally:
            # The master may already be gone; a stale socket file must not outlive the run.
            try:
                os.unlink(self.socket_path)
            except FileNotFoundError:
                pass

    def exec_on(self, command: Command, *, capture_output: bool = False) -> str:
        """Run a command on the Stratum 0 over the control socket."""
        return run_cmd(
            [
                "ssh",
                "-S", str(self.socket_path),
                "-l", self.user,
                self.host,
                "--",
                remote_command(command),
            ],
            capture_output=capture_output,
        )

    def copy_to(self, local_file: str | Path) -> str:
        """Copy one file into the remote work directory and return its remote path."""
        local_path = Path(local_file)
        if not local_path.is_file():
            raise CiToolError(f"Cannot copy missing file to Stratum 0: {local_path}")
        self.exec_on(["mkdir", "-p", self.remote_workdir])
        remote_path = f"{self.remote_workdir}/{local_path.name}"
        run_cmd(
            [
                "scp",
                "-o", f"ControlPath={self.socket_path}",
                str(local_path),
                f"{self.user}@{self.host}:{remote_path}",
            ],
            capture_output=False,
        )
        return remote_path

    def remote_workdir_path(self) -> str:
        """Absolute path of the work directory, for docker bind mounts."""
        home = self.exec_on("pwd", capture_output=True).strip()
        if not home:
            raise CiToolError(f"Could not determine home directory of {self.user}@{self.host}")
        return f"{home}/{self.remote_workdir}"

    def remote_uid(self) -> str:
        return self.exec_on(["id", "-u"], capture_output=True).strip()
