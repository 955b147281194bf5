"""
Script: cvmfs_deploy/repo_config.py
What: Loads the toolset -> repository -> deployment bundle map.
Doing: Parses `.ci/repos.json` into frozen dataclasses and resolves one repository bundle.
Why: Replaces the bash associative arrays with one typed, immutable config object.
Goal: Give every later step a single source for user, host, conda, and Galaxy config paths.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from cvmfs_deploy.common import CiToolError


OVERLAYFS_ROOT = "/var/spool/cvmfs"

REPO_FIELDS = (
    "user",
    "stratum0",
    "conda_path",
    "install_database",
    "shed_tool_config",
    "shed_tool_data_table_config",
    "shed_tool_dir",
)


def path_in_repo(path: str, repo: str) -> str:
    """
    Return the part of `path` after the last occurrence of the repo name.

    Example: `/cvmfs/main.galaxyproject.org/config/shed_tool_conf.xml` with
    repo `main.galaxyproject.org` becomes `/config/shed_tool_conf.xml`.
    """
    return path.rsplit(repo, 1)[-1]


@dataclass(frozen=True)
class RepoConfig:
    """Deployment parameters for one CVMFS repository."""

    name: str
    user: str
    stratum0: str
    conda_path: str
    install_database: str
    shed_tool_config: str
    shed_tool_data_table_config: str
    shed_tool_dir: str

    @property
    def container_name(self) -> str:
        return f"galaxy-{self.user}"

    @property
    def overlayfs_upper(self) -> str:
        # Writable layer of an open transaction; this is what gets published.
        return f"{OVERLAYFS_ROOT}/{self.name}/scratch/current"

    @property
    def overlayfs_lower(self) -> str:
        return f"{OVERLAYFS_ROOT}/{self.name}/rdonly"

    @property
    def primary_shed_tool_config(self) -> str:
        # Galaxy accepts a comma-separated tool config list; the shed config is first.
        return self.shed_tool_config.rsplit(",", 1)[0]

    def upper_path(self, path: str) -> str:
        return self.overlayfs_upper + path_in_repo(path, self.name)

    def lower_path(self, path: str) -> str:
        return self.overlayfs_lower + path_in_repo(path, self.name)


@dataclass(frozen=True)
class ToolsetRepoMap:
    toolsets: Mapping[str, str]
    repos: Mapping[str, RepoConfig]

    def toolset_dirs(self) -> list[str]:
        """Directories that change detection is limited to, like `usegalaxy.org/`."""
        return [f"{toolset}/" for toolset in self.toolsets]

    def repo_for_toolset(self, toolset: str) -> str:
        try:
            return self.toolsets[toolset]
        except KeyError:
            raise CiToolError(f"No repository configured for toolset: {toolset}") from None

    def resolve(self, repo: str) -> RepoConfig:
        try:
            return self.repos[repo]
        except KeyError:
            raise CiToolError(f"No deployment config for repository: {repo}") from None


def parse_repo_configs(document: Mapping) -> ToolsetRepoMap:
    """Build the immutable map from the decoded JSON document."""
    toolsets = document.get("toolsets")
    repo_docs = document.get("repos")
    if not isinstance(toolsets, dict) or not toolsets:
        raise CiToolError("Repository config is missing a non-empty `toolsets` object")
    if not isinstance(repo_docs, dict) or not repo_docs:
        raise CiToolError("Repository config is missing a non-empty `repos` object")

    repos: dict[str, RepoConfig] = {}
    for repo_name, values in repo_docs.items():
        missing = [field for field in REPO_FIELDS if not values.get(field)]
        if missing:
            raise CiToolError(
                f"Repository config for {repo_name} is missing: {', '.join(missing)}"
            )
        repos[repo_name] = RepoConfig(
            name=repo_name,
            **{field: str(values[field]) for field in REPO_FIELDS},
        )

    # Catch typos here rather than halfway through a deployment.
    for toolset, repo_name in toolsets.items():
        if repo_name not in repos:
            raise CiToolError(f"Toolset {toolset} points at unknown repository {repo_name}")

    return ToolsetRepoMap(toolsets=dict(toolsets), repos=repos)


def load_repo_configs(config_path: str | Path) -> ToolsetRepoMap:
    path = Path(config_path)
    if not path.exists():
        raise CiToolError(f"Repository config file not found: {config_path}")
    with path.open("r", encoding="utf-8") as handle:
        try:
            document = json.load(handle)
        except json.JSONDecodeError as exc:
            raise CiToolError(f"Invalid JSON in repository config {config_path}: {exc}") from exc
    return parse_repo_configs(document)
