from __future__ import annotations

import unittest

from cvmfs_deploy.common import CiToolError
from cvmfs_deploy.verify import (
    check_for_repo_changes,
    conda_link_fix_command,
    expected_changes_test,
    post_install,
)
from tests.fakes import FakeGalaxy, FakeSession, make_repo


class CheckForRepoChangesTests(unittest.TestCase):
    def test_config_diffs_are_informational(self) -> None:
        # diff exits non-zero when files differ; that must not fail the run.
        session = FakeSession([], fail_on=("diff",))
        check_for_repo_changes(session, make_repo(), FakeGalaxy([]))
        self.assertIn(
            "diff -u /var/spool/cvmfs/repoY/rdonly/config/shed_tool_conf.xml "
            "/cvmfs/repoY/config/shed_tool_conf.xml",
            session.commands,
        )
        self.assertEqual(session.commands[-1], expected_changes_test(make_repo()))

    def test_missing_new_directories_is_fatal(self) -> None:
        events: list[str] = []
        session = FakeSession([], fail_on=("[ -d",))
        with self.assertRaises(CiToolError) as ctx:
            check_for_repo_changes(session, make_repo(), FakeGalaxy(events))
        self.assertIn("expected changes", str(ctx.exception))
        self.assertIn("galaxy.show_logs", events)

    def test_expected_changes_test_checks_upper_layer(self) -> None:
        self.assertEqual(
            expected_changes_test(make_repo()),
            "[ -d /var/spool/cvmfs/repoY/scratch/current/deps/_conda"
            " -o -d /var/spool/cvmfs/repoY/scratch/current/shed_tools ]",
        )


class PostInstallTests(unittest.TestCase):
    def test_runs_permission_clean_and_link_fixes(self) -> None:
        session = FakeSession([])
        post_install(session, make_repo())
        self.assertEqual(len(session.commands), 4)
        self.assertIn("chmod go+r", session.commands[0])
        self.assertIn("chmod go+rx", session.commands[1])
        self.assertEqual(session.commands[2], "/cvmfs/repoY/deps/_conda/bin/conda clean --tarballs --yes")
        self.assertEqual(session.commands[3], conda_link_fix_command(make_repo()))

    def test_link_fix_covers_all_envs_and_shims(self) -> None:
        command = conda_link_fix_command(make_repo())
        self.assertIn("for env in /cvmfs/repoY/deps/_conda/envs/*;", command)
        self.assertIn("for link in conda activate deactivate;", command)
        self.assertIn('ln -s /cvmfs/repoY/deps/_conda/bin/"${link}"', command)


if __name__ == "__main__":
    unittest.main()
