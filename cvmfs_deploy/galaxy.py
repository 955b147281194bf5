"""
Script: cvmfs_deploy/galaxy.py
What: Runs a throwaway Galaxy container on the Stratum 0.
Doing: Stages configs, pulls the image, starts the container, waits for the API, and tears it down.
Why: Tools are installed through a real Galaxy so the CVMFS tree matches what production Galaxy expects.
Goal: Provide a running Galaxy for the installer, and never leave a container behind.
"""

from __future__ import annotations

import enum
import time
from pathlib import Path

import httpx

from cvmfs_deploy.common import CiToolError, best_effort, log, log_debug, log_error
from cvmfs_deploy.remote import SshSession
from cvmfs_deploy.repo_config import RepoConfig


DEFAULT_GALAXY_IMAGE = "galaxy/galaxy:19.05"
DEFAULT_TEMPLATE_DB_URL = "https://depot.galaxyproject.org/nate/galaxy-153.sqlite"
WAIT_TIMEOUT_SECONDS = 120
WAIT_INTERVAL_SECONDS = 1.0
CI_DIR = Path(".ci")


class LaunchStrategy(enum.Enum):
    """How a Galaxy image has to be configured and started."""

    # Official image: sqlite template db, uwsgi entrypoint.
    CLOUDVE = "galaxy/galaxy"
    # Batteries-included image: job_conf.xml + nginx.conf, default entrypoint.
    BGRUENING = "bgruening/galaxy-stable"

    @classmethod
    def for_image(cls, image: str) -> "LaunchStrategy":
        for strategy in cls:
            if image.startswith(strategy.value):
                return strategy
        raise CiToolError(f"Unknown Galaxy Docker image: {image}")


def template_db_name(url: str) -> str:
    return url.rstrip("/").rsplit("/", 1)[-1]


def download_file(client: httpx.Client, url: str, destination: Path) -> None:
    log(f"Downloading {url} to {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        with client.stream("GET", url, follow_redirects=True) as response:
            response.raise_for_status()
            with destination.open("wb") as handle:
                for chunk in response.iter_bytes():
                    handle.write(chunk)
    except httpx.HTTPError as exc:
        raise CiToolError(f"Failed to download {url}: {exc}") from exc


class GalaxyInstance:
    def __init__(
        self,
        session: SshSession,
        repo: RepoConfig,
        *,
        image: str = DEFAULT_GALAXY_IMAGE,
        strategy: LaunchStrategy | None = None,
        api_key: str = "deadbeef",
        galaxy_url: str = "http://127.0.0.1:8080",
        template_db_url: str = DEFAULT_TEMPLATE_DB_URL,
        ci_dir: Path = CI_DIR,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.session = session
        self.repo = repo
        self.image = image
        self.strategy = strategy or LaunchStrategy.for_image(image)
        self.api_key = api_key
        self.galaxy_url = galaxy_url.rstrip("/")
        self.template_db_url = template_db_url
        self.template_db = template_db_name(template_db_url)
        self.ci_dir = Path(ci_dir)
        # Only a client created here is closed here; an injected one belongs to the caller.
        self._owns_http = http_client is None
        self.http = http_client or httpx.Client(timeout=10.0)
        self.container_name = repo.container_name
        self.tmpdir = ""
        self.running = False

    # -- launch ------------------------------------------------------------

    def run(self) -> None:
        if self.strategy is LaunchStrategy.CLOUDVE:
            self._run_cloudve()
        else:
            self._run_bgruening()
        self.running = True

    def _cvmfs_mount(self) -> str:
        return f"/cvmfs/{self.repo.name}:/cvmfs/{self.repo.name}"

    def setup_args(self, uid: str, workdir: str) -> list[str]:
        """`docker run` that upgrades the template database schema in place."""
        return [
            "docker", "run", "--rm",
            "--user", uid,
            f"--name={self.container_name}-setup",
            "-e", f"GALAXY_CONFIG_OVERRIDE_DATABASE_CONNECTION=sqlite:////{self.template_db}",
            "-v", f"{workdir}/{self.template_db}:/{self.template_db}",
            self.image,
            "./.venv/bin/python", "./scripts/manage_db.py", "upgrade",
        ]

    def cloudve_run_args(self, uid: str, workdir: str, tmpdir: str) -> list[str]:
        repo = self.repo
        env = {
            "GALAXY_CONFIG_OVERRIDE_DATABASE_CONNECTION": f"sqlite:////{self.template_db}",
            "GALAXY_CONFIG_OVERRIDE_INTEGRATED_TOOL_PANEL_CONFIG": "/tmp/integrated_tool_panel.xml",
            "GALAXY_CONFIG_OVERRIDE_TOOL_CONFIG_FILE": repo.shed_tool_config,
            "GALAXY_CONFIG_OVERRIDE_SHED_TOOL_DATA_TABLE_CONFIG": repo.shed_tool_data_table_config,
            "GALAXY_CONFIG_TOOL_DATA_PATH": "/tmp/tool-data",
            "GALAXY_CONFIG_INSTALL_DATABASE_CONNECTION": f"sqlite:///{repo.install_database}",
            "GALAXY_CONFIG_MASTER_API_KEY": self.api_key,
            "GALAXY_CONFIG_CONDA_PREFIX": repo.conda_path,
            "CONDARC": f"{repo.conda_path}rc",
        }
        mounts = [
            f"{workdir}/{self.template_db}:/{self.template_db}",
            self._cvmfs_mount(),
            f"{tmpdir}:/galaxy/server/database",
        ]
        return [
            "docker", "run", "-d",
            "-p", f"127.0.0.1:{self.session.remote_port}:8080",
            "--user", uid,
            f"--name={self.container_name}",
            *_env_args(env),
            *_mount_args(mounts),
            self.image,
            "./.venv/bin/uwsgi", "--yaml", "config/galaxy.yml",
        ]

    def bgruening_run_args(self, workdir: str) -> list[str]:
        repo = self.repo
        env = {
            "GALAXY_CONFIG_INSTALL_DATABASE_CONNECTION": f"sqlite:///{repo.install_database}",
            "GALAXY_CONFIG_TOOL_CONFIG_FILE": repo.shed_tool_config,
            "GALAXY_CONFIG_MASTER_API_KEY": self.api_key,
            "GALAXY_CONFIG_CONDA_PREFIX": repo.conda_path,
            "GALAXY_HANDLER_NUMPROCS": "0",
            "CONDARC": f"{repo.conda_path}rc",
            "GALAXY_CONFIG_JOB_CONFIG_FILE": "/job_conf.xml",
        }
        mounts = [
            self._cvmfs_mount(),
            f"{workdir}/job_conf.xml:/job_conf.xml",
            f"{workdir}/nginx.conf:/etc/nginx/nginx.conf",
        ]
        return [
            "docker", "run", "-d",
            "-p", f"127.0.0.1:{self.session.remote_port}:80",
            f"--name={self.container_name}",
            *_env_args(env),
            *_mount_args(mounts),
            self.image,
        ]

    def _pull_image(self) -> None:
        log("Fetching latest Galaxy image")
        self.session.exec_on(["docker", "pull", self.image])

    def _run_cloudve(self) -> None:
        log("Copying configs to Stratum 0")
        local_db = self.ci_dir / self.template_db
        download_file(self.http, self.template_db_url, local_db)
        self.session.copy_to(local_db)
        self._pull_image()

        workdir = self.session.remote_workdir_path()
        uid = self.session.remote_uid()
        log("Updating database")
        self.session.exec_on(self.setup_args(uid, workdir))

        log("Starting Galaxy on Stratum 0")
        self.tmpdir = self.session.exec_on(
            ["mktemp", "-d", "-t", "usegalaxy-tools.XXXXXX"], capture_output=True
        ).strip()
        self.session.exec_on(self.cloudve_run_args(uid, workdir, self.tmpdir))

    def _run_bgruening(self) -> None:
        log("Copying configs to Stratum 0")
        self.session.copy_to(self.ci_dir / "job_conf.xml")
        self.session.copy_to(self.ci_dir / "nginx.conf")
        self._pull_image()

        workdir = self.session.remote_workdir_path()
        log("Starting Galaxy on Stratum 0")
        self.session.exec_on(self.bgruening_run_args(workdir))

    # -- readiness ---------------------------------------------------------

    def is_ready(self) -> bool:
        try:
            response = self.http.get(f"{self.galaxy_url}/api/version")
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    def wait(
        self,
        timeout: float = WAIT_TIMEOUT_SECONDS,
        interval: float = WAIT_INTERVAL_SECONDS,
    ) -> None:
        log("Waiting for Galaxy connection")
        deadline = time.monotonic() + timeout
        while True:
            if self.is_ready():
                log(f"Galaxy is up at {self.galaxy_url}")
                return
            if time.monotonic() >= deadline:
                break
            time.sleep(interval)

        log_error("Timed out waiting for Galaxy")
        log_debug("contents of docker log")
        best_effort(self.show_logs)
        log_debug(f"response from {self.galaxy_url}")
        self.show_response()
        raise CiToolError("Terminating build due to previous errors")

    def show_response(self) -> None:
        try:
            response = self.http.get(self.galaxy_url)
        except httpx.HTTPError as exc:
            print(f"{type(exc).__name__}: {exc}")
            return
        print(f"HTTP {response.status_code}")
        print(response.text)

    # -- diagnostics -------------------------------------------------------

    def show_logs(self, tail: int | None = None) -> None:
        args = ["docker", "logs"]
        if tail:
            args.extend(["--tail", str(tail)])
            log_debug(f"tail {tail} of server log")
        else:
            log_debug("contents of server log")
        args.append(self.container_name)
        self.session.exec_on(args)

    def show_paths(self) -> None:
        if self.tmpdir:
            log_debug("contents of $GALAXY_TMPDIR (will be discarded)")
            self.session.exec_on(["ls", "-lR", self.tmpdir])
        log_debug("contents of OverlayFS upper mount (will be published)")
        self.session.exec_on(["ls", "-lR", self.repo.overlayfs_upper])

    # -- teardown ----------------------------------------------------------

    def stop(self) -> None:
        log("Stopping Galaxy on Stratum 0")
        try:
            self.session.exec_on(["docker", "kill", self.container_name])
        except CiToolError as exc:
            # Probably failed to start; keep going so the container still gets removed.
            log_error(f"docker kill failed, continuing: {exc}")
        self.session.exec_on(["docker", "rm", "-v", self.container_name])
        if self.tmpdir:
            self.session.exec_on(["rm", "-rf", self.tmpdir])
            self.tmpdir = ""
        self.running = False

    def close(self) -> None:
        if self._owns_http:
            self.http.close()


def _env_args(env: dict[str, str]) -> list[str]:
    args: list[str] = []
    for key, value in env.items():
        args.extend(["-e", f"{key}={value}"])
    return args


def _mount_args(mounts: list[str]) -> list[str]:
    args: list[str] = []
    for mount in mounts:
        args.extend(["-v", mount])
    return args
