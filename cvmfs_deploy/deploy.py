"""
Script: cvmfs_deploy/deploy.py
What: Runs the full tool deployment from change detection to publish.
Doing: Detects changed lock files, opens an ssh session and a CVMFS transaction, installs the tools
through a temporary Galaxy, verifies the overlay, and publishes or aborts.
Why: Every step holds a remote resource, and all of them must be released on any exit path.
Goal: One linear run that never leaves a container, an open transaction, or an ssh master behind.
"""

from __future__ import annotations

import signal
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Sequence

from cvmfs_deploy.common import (
    TerminatedError,
    env_flag,
    log,
    optional_env,
    run_cmd,
)
from cvmfs_deploy.detect_changes import DEFAULT_REPOS_CONFIG, ChangeSet, detect_changes
from cvmfs_deploy.galaxy import (
    DEFAULT_GALAXY_IMAGE,
    DEFAULT_TEMPLATE_DB_URL,
    GalaxyInstance,
    LaunchStrategy,
)
from cvmfs_deploy.install_tools import install_tools
from cvmfs_deploy.remote import DEFAULT_SOCKET_DIR, SshSession
from cvmfs_deploy.repo_config import RepoConfig, load_repo_configs
from cvmfs_deploy.transaction import CvmfsTransaction, resolve_publish_intent
from cvmfs_deploy.verify import check_for_repo_changes, post_install


LOCAL_PORT = 8080
REMOTE_PORT = 8080
DEFAULT_API_KEY = "deadbeef"

Installer = Callable[..., None]


@dataclass(frozen=True)
class DeployConfig:
    repo: RepoConfig
    git_commit: str
    publish: bool
    galaxy_image: str
    launch_strategy: LaunchStrategy
    api_key: str = DEFAULT_API_KEY
    template_db_url: str = DEFAULT_TEMPLATE_DB_URL
    socket_dir: Path = DEFAULT_SOCKET_DIR
    local_port: int = LOCAL_PORT
    remote_port: int = REMOTE_PORT

    @property
    def galaxy_url(self) -> str:
        return f"http://127.0.0.1:{self.local_port}"


@dataclass
class RunState:
    """Which remote resources are currently live and need releasing."""

    ssh_master_up: bool = False
    cvmfs_transaction_up: bool = False
    galaxy_up: bool = False


def current_git_commit() -> str:
    # Jenkins sets GIT_COMMIT; fall back to HEAD for local runs.
    commit = optional_env("GIT_COMMIT").strip()
    if commit:
        return commit
    return run_cmd(["git", "rev-parse", "HEAD"]).strip()


def build_deploy_config(repo: RepoConfig, *, publish: bool) -> DeployConfig:
    galaxy_image = optional_env("GALAXY_DOCKER_IMAGE", DEFAULT_GALAXY_IMAGE)
    return DeployConfig(
        repo=repo,
        git_commit=current_git_commit(),
        publish=publish,
        galaxy_image=galaxy_image,
        # Unknown images fail here, before anything remote is touched.
        launch_strategy=LaunchStrategy.for_image(galaxy_image),
        api_key=optional_env("API_KEY", DEFAULT_API_KEY),
        template_db_url=optional_env("GALAXY_TEMPLATE_DB_URL", DEFAULT_TEMPLATE_DB_URL),
        socket_dir=Path(optional_env("SSH_MASTER_SOCKET_DIR", str(DEFAULT_SOCKET_DIR))),
    )


@contextmanager
def handle_signals(
    signals: Sequence[signal.Signals] = (signal.SIGTERM, signal.SIGINT),
) -> Iterator[None]:
    """Turn SIGTERM/SIGINT into `TerminatedError` so cleanup runs as for any failure."""

    def _terminate(signum: int, _frame: object) -> None:
        # Ignore repeats so a second Ctrl-C cannot interrupt the cleanup itself.
        for sig in signals:
            signal.signal(sig, signal.SIG_IGN)
        raise TerminatedError(f"Terminated by signal {signal.Signals(signum).name}")

    previous = {sig: signal.signal(sig, _terminate) for sig in signals}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


class Deployment:
    """
    Sequences one deployment run.

    Session, transaction and Galaxy are acquired in that order and released
    in reverse. `RunState` records which of them are live; a release only
    happens while its flag is set, so the normal path (which stops Galaxy
    and resolves the transaction itself) and the failure path share the same
    release code without double teardown.
    """

    def __init__(
        self,
        config: DeployConfig,
        changes: ChangeSet,
        *,
        session: SshSession | None = None,
        transaction: CvmfsTransaction | None = None,
        galaxy: GalaxyInstance | None = None,
        installer: Installer = install_tools,
    ) -> None:
        self.config = config
        self.changes = changes
        self.state = RunState()
        repo = config.repo
        self.session = session or SshSession(
            repo.user,
            repo.stratum0,
            socket_dir=config.socket_dir,
            local_port=config.local_port,
            remote_port=config.remote_port,
        )
        self.transaction = transaction or CvmfsTransaction(self.session, repo.name)
        self.galaxy = galaxy or GalaxyInstance(
            self.session,
            repo,
            image=config.galaxy_image,
            strategy=config.launch_strategy,
            api_key=config.api_key,
            galaxy_url=config.galaxy_url,
            template_db_url=config.template_db_url,
        )
        self.installer = installer

    def _release(self, flag: str, release: Callable[[], None]) -> None:
        if not getattr(self.state, flag):
            return
        # Clear first: a release that fails is not retried by a later teardown.
        setattr(self.state, flag, False)
        release()

    @contextmanager
    def _scoped(
        self,
        flag: str,
        acquire: Callable[[], None],
        release: Callable[[], None],
    ) -> Iterator[None]:
        acquire()
        setattr(self.state, flag, True)
        try:
            yield
        finally:
            self._release(flag, release)

    def _publish(self) -> None:
        if not self.state.cvmfs_transaction_up:
            return
        # Flag stays set until publish succeeds, so a failed publish is aborted on unwind.
        self.transaction.publish(self.config.git_commit)
        self.state.cvmfs_transaction_up = False

    def teardown(self) -> None:
        """Release every live resource, newest first. Safe to call repeatedly."""
        # ExitStack runs callbacks in reverse and keeps going if one raises.
        with ExitStack() as stack:
            stack.callback(self._release, "ssh_master_up", self.session.stop)
            stack.callback(self._release, "cvmfs_transaction_up", self.transaction.abort)
            stack.callback(self._release, "galaxy_up", self.galaxy.stop)

    def run(self) -> None:
        repo = self.config.repo
        with ExitStack() as stack:
            stack.callback(self.galaxy.close)
            stack.enter_context(
                self._scoped("ssh_master_up", self.session.start, self.session.stop)
            )
            stack.enter_context(
                self._scoped("cvmfs_transaction_up", self.transaction.begin, self.transaction.abort)
            )
            stack.enter_context(self._scoped("galaxy_up", self.galaxy.run, self.galaxy.stop))

            self.galaxy.wait()
            self.installer(
                self.changes.tool_yamls,
                self.galaxy,
                galaxy_url=self.config.galaxy_url,
                api_key=self.config.api_key,
            )
            check_for_repo_changes(self.session, repo, self.galaxy)
            self._release("galaxy_up", self.galaxy.stop)
            post_install(self.session, repo)

            if self.config.publish:
                self._publish()
            else:
                self._release("cvmfs_transaction_up", self.transaction.abort)


def main() -> None:
    publish = resolve_publish_intent(env_flag("PUBLISH"), optional_env("ghprbCommentBody"))

    log("Loading repository configs")
    repo_map = load_repo_configs(optional_env("REPOS_CONFIG", DEFAULT_REPOS_CONFIG))

    # Detection runs before any remote connection, so a bad changeset costs nothing.
    changes = detect_changes(repo_map)
    if not changes:
        print("No tool changes, terminating")
        return

    log(f"Getting repo for toolset: {changes.toolset}")
    repo_name = repo_map.repo_for_toolset(changes.toolset)
    print(f"REPO={repo_name}")
    config = build_deploy_config(repo_map.resolve(repo_name), publish=publish)

    with handle_signals():
        Deployment(config, changes).run()


if __name__ == "__main__":
    main()
