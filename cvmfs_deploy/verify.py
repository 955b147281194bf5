"""
Script: cvmfs_deploy/verify.py
What: Post-install checks and fixes on the CVMFS transaction overlay.
Doing: Diffs Galaxy config files between overlay layers, checks for new tool/conda dirs, then normalizes permissions and conda links.
Why: A "successful" install that wrote nothing, or wrote unreadable files, must never be published.
Goal: Only publish trees that actually changed and are readable by every CVMFS client.
"""

from __future__ import annotations

import shlex

from cvmfs_deploy.common import CiToolError, best_effort, log, log_debug, log_error
from cvmfs_deploy.galaxy import GalaxyInstance
from cvmfs_deploy.remote import SshSession
from cvmfs_deploy.repo_config import RepoConfig


CONDA_SHIMS = ("conda", "activate", "deactivate")


def _show_diff(session: SshSession, lower: str, upper: str) -> None:
    # diff exits 1 when the files differ, which is the expected case here.
    try:
        session.exec_on(["diff", "-u", lower, upper])
    except CiToolError:
        pass


def expected_changes_test(repo: RepoConfig) -> str:
    """Remote shell test that succeeds if the install created conda or tool dirs."""
    conda_dir = shlex.quote(repo.upper_path(repo.conda_path))
    tool_dir = shlex.quote(repo.upper_path(repo.shed_tool_dir))
    return f"[ -d {conda_dir} -o -d {tool_dir} ]"


def check_for_repo_changes(session: SshSession, repo: RepoConfig, galaxy: GalaxyInstance) -> None:
    log("Checking for changes to repo")
    best_effort(galaxy.show_paths)

    shed_tool_config = repo.primary_shed_tool_config
    log_debug("diff of shed_tool_conf.xml")
    _show_diff(session, repo.lower_path(shed_tool_config), shed_tool_config)
    log_debug("diff of shed_tool_data_table_conf.xml")
    _show_diff(
        session,
        repo.lower_path(repo.shed_tool_data_table_config),
        repo.shed_tool_data_table_config,
    )

    try:
        session.exec_on(expected_changes_test(repo))
    except CiToolError as exc:
        log_error("Tool installation failed")
        best_effort(galaxy.show_logs)
        raise CiToolError(
            f"Terminating build: expected changes to {repo.overlayfs_upper} not found!"
        ) from exc


def permission_fix_commands(repo: RepoConfig) -> list[str]:
    upper = shlex.quote(repo.overlayfs_upper)
    return [
        f"find {upper} -perm -u+r -not -perm -o+r -not -type l -print0"
        " | xargs -0 --no-run-if-empty chmod go+r",
        f"find {upper} -perm -u+rx -not -perm -o+rx -not -type l -print0"
        " | xargs -0 --no-run-if-empty chmod go+rx",
    ]


def conda_link_fix_command(repo: RepoConfig) -> str:
    """
    Shell loop restoring `conda`, `activate` and `deactivate` links in each env.

    This walks every env under the conda prefix, not only the ones created in
    this transaction, so older broken envs get repaired too.
    """
    conda_bin = shlex.quote(f"{repo.conda_path}/bin")
    envs_glob = shlex.quote(f"{repo.conda_path}/envs/") + "*"
    links = " ".join(CONDA_SHIMS)
    return (
        f"for env in {envs_glob}; do for link in {links}; do "
        f'[ -h "${{env}}/bin/${{link}}" ] || ln -s {conda_bin}/"${{link}}" "${{env}}/bin/${{link}}"; '
        "done; done"
    )


def post_install(session: SshSession, repo: RepoConfig) -> None:
    log("Running post-installation tasks")
    for command in permission_fix_commands(repo):
        session.exec_on(command)
    session.exec_on([f"{repo.conda_path}/bin/conda", "clean", "--tarballs", "--yes"])
    session.exec_on(conda_link_fix_command(repo))
