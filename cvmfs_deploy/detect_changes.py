"""
Script: cvmfs_deploy/detect_changes.py
What: Finds tool lock files changed since the base branch.
Doing: Fetches `origin/master`, runs a name-status diff over the toolset directories, and filters the result.
Why: Only changed tool definitions should be installed, and only into one repository per run.
Goal: Produce the ordered list of lock files to install and the single toolset they belong to.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from cvmfs_deploy.common import CiToolError, log, optional_env, run_cmd
from cvmfs_deploy.repo_config import ToolsetRepoMap, load_repo_configs


BASE_BRANCH = "master"
BASE_REF = f"origin/{BASE_BRANCH}"
TOOL_FILE_EXTENSION = ".lock"
INSTALL_OPERATIONS = frozenset({"A", "M"})
DEFAULT_REPOS_CONFIG = ".ci/repos.json"


@dataclass(frozen=True)
class ChangeSet:
    toolset: str
    changes: tuple[tuple[str, str], ...]

    @property
    def tool_yamls(self) -> list[str]:
        return [path for _op, path in self.changes]

    def __bool__(self) -> bool:
        return bool(self.changes)


def parse_name_status(output: str) -> list[tuple[str, str]]:
    """Parse `git diff --name-status` output into `(op, path)` pairs."""
    entries: list[tuple[str, str]] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        # Renames/copies carry a score and two paths; the last one is the new file.
        parts = line.split("\t")
        if len(parts) < 2:
            parts = line.split(None, 1)
        if len(parts) < 2:
            raise CiToolError(f"Unexpected git diff output line: {line!r}")
        entries.append((parts[0].strip(), parts[-1].strip()))
    return entries


def toolset_of(path: str) -> str:
    return path.split("/", 1)[0]


def select_changes(entries: Iterable[tuple[str, str]]) -> ChangeSet:
    """
    Reduce raw diff entries to the lock files that need installing.

    Every entry counts toward the toolset check, including deletions and
    non-lock files, so a commit touching two toolsets fails even if only one
    of them has lock file changes.
    """
    toolset = ""
    selected: list[tuple[str, str]] = []
    for op, path in entries:
        entry_toolset = toolset_of(path)
        if toolset and toolset != entry_toolset:
            raise CiToolError(
                f"Changes to tools in multiple toolsets found: {toolset} != {entry_toolset}"
            )
        toolset = toolset or entry_toolset

        if not path.endswith(TOOL_FILE_EXTENSION):
            continue
        if op in INSTALL_OPERATIONS:
            print(f"{op} {path}")
            selected.append((op, path))
    return ChangeSet(toolset=toolset, changes=tuple(selected))


def detect_changes(repo_map: ToolsetRepoMap, *, base_ref: str = BASE_REF) -> ChangeSet:
    log("Detecting changes to tool files...")
    # CI clones often track only the PR branch; make sure the base branch is fetched.
    run_cmd(["git", "remote", "set-branches", "--add", "origin", BASE_BRANCH], capture_output=False)
    run_cmd(["git", "fetch", "origin"], capture_output=False)
    commit_range = f"{base_ref}..."

    toolset_dirs = repo_map.toolset_dirs()
    log("Change detection limited to toolset directories:")
    for toolset_dir in toolset_dirs:
        print(toolset_dir)

    output = run_cmd(
        ["git", "diff", "--color=never", "--name-status", commit_range, "--", *toolset_dirs]
    )
    changes = select_changes(parse_name_status(output))

    log("Change detection results:")
    print(f"TOOLSET={changes.toolset}")
    print(f"TOOL_YAMLS={' '.join(changes.tool_yamls)}")
    return changes


def main() -> None:
    # Dry run: report what a deploy would install without touching any remote system.
    repo_map = load_repo_configs(optional_env("REPOS_CONFIG", DEFAULT_REPOS_CONFIG))
    changes = detect_changes(repo_map)
    if not changes:
        print("No tool changes")
        return
    repo = repo_map.repo_for_toolset(changes.toolset)
    print(f"Toolset {changes.toolset} deploys to {repo}")
    for path in changes.tool_yamls:
        print(f"  {path}")


if __name__ == "__main__":
    main()
