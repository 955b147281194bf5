"""
Script: tests/test_galaxy.py
What: Unit tests for the Galaxy container lifecycle.
Doing: Checks strategy selection, generated `docker run` arguments, readiness polling, and teardown tolerance.
Why: A container left running on the Stratum 0 blocks the next run for the same repository.
Goal: Keep the launch variants and the kill/remove asymmetry stable.
"""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import httpx

from cvmfs_deploy.common import CiToolError
from cvmfs_deploy.galaxy import GalaxyInstance, LaunchStrategy, download_file, template_db_name
from tests.fakes import FakeSession, make_repo


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class LaunchStrategyTests(unittest.TestCase):
    def test_official_image(self) -> None:
        self.assertIs(LaunchStrategy.for_image("galaxy/galaxy:19.05"), LaunchStrategy.CLOUDVE)

    def test_stable_image(self) -> None:
        self.assertIs(
            LaunchStrategy.for_image("bgruening/galaxy-stable:19.01"), LaunchStrategy.BGRUENING
        )

    def test_unknown_image_is_fatal(self) -> None:
        with self.assertRaises(CiToolError):
            LaunchStrategy.for_image("quay.io/other/galaxy")

    def test_template_db_name(self) -> None:
        self.assertEqual(
            template_db_name("https://depot.galaxyproject.org/nate/galaxy-153.sqlite"),
            "galaxy-153.sqlite",
        )


class GalaxyInstanceTests(unittest.TestCase):
    def _galaxy(self, session: FakeSession, *, image="galaxy/galaxy:19.05", handler=None) -> GalaxyInstance:
        handler = handler or (lambda request: httpx.Response(200, json={"version_major": "19.05"}))
        return GalaxyInstance(
            session,
            make_repo(),
            image=image,
            api_key="secret",
            http_client=_client(handler),
        )

    def test_cloudve_run_args(self) -> None:
        galaxy = self._galaxy(FakeSession([]))
        args = galaxy.cloudve_run_args("1000", "/home/g2test/work", "/tmp/usegalaxy-tools.abc")
        self.assertEqual(args[:5], ["docker", "run", "-d", "-p", "127.0.0.1:8080:8080"])
        self.assertIn("--name=galaxy-g2test", args)
        self.assertIn("GALAXY_CONFIG_MASTER_API_KEY=secret", args)
        self.assertIn("GALAXY_CONFIG_CONDA_PREFIX=/cvmfs/repoY/deps/_conda", args)
        self.assertIn("CONDARC=/cvmfs/repoY/deps/_condarc", args)
        self.assertIn("/cvmfs/repoY:/cvmfs/repoY", args)
        self.assertIn("/tmp/usegalaxy-tools.abc:/galaxy/server/database", args)
        self.assertEqual(args[-3:], ["./.venv/bin/uwsgi", "--yaml", "config/galaxy.yml"])

    def test_bgruening_run_args(self) -> None:
        galaxy = self._galaxy(FakeSession([]), image="bgruening/galaxy-stable:19.01")
        args = galaxy.bgruening_run_args("/home/g2test/work")
        self.assertIn("127.0.0.1:8080:80", args)
        self.assertIn("GALAXY_HANDLER_NUMPROCS=0", args)
        self.assertIn("/home/g2test/work/nginx.conf:/etc/nginx/nginx.conf", args)
        self.assertEqual(args[-1], "bgruening/galaxy-stable:19.01")

    def test_bgruening_run_stages_configs_and_starts(self) -> None:
        session = FakeSession([])
        with tempfile.TemporaryDirectory() as temp_dir:
            ci_dir = Path(temp_dir)
            (ci_dir / "job_conf.xml").write_text("<job_conf/>", encoding="utf-8")
            (ci_dir / "nginx.conf").write_text("events {}", encoding="utf-8")
            galaxy = self._galaxy(session, image="bgruening/galaxy-stable:19.01")
            galaxy.ci_dir = ci_dir
            copied: list[Path] = []
            session.copy_to = copied.append
            session.remote_workdir_path = lambda: "/home/g2test/work"
            galaxy.run()
        self.assertTrue(galaxy.running)
        self.assertEqual([path.name for path in copied], ["job_conf.xml", "nginx.conf"])
        self.assertEqual(session.commands[0], "docker pull bgruening/galaxy-stable:19.01")
        self.assertTrue(session.commands[-1].startswith("docker run -d"))

    def test_wait_returns_when_api_answers(self) -> None:
        galaxy = self._galaxy(FakeSession([]))
        galaxy.wait(timeout=0)

    def test_wait_timeout_dumps_diagnostics_and_fails(self) -> None:
        def _refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        session = FakeSession([])
        galaxy = self._galaxy(session, handler=_refuse)
        with self.assertRaises(CiToolError):
            galaxy.wait(timeout=0, interval=0)
        self.assertIn("docker logs galaxy-g2test", session.commands)

    def test_wait_treats_error_status_as_not_ready(self) -> None:
        galaxy = self._galaxy(FakeSession([]), handler=lambda request: httpx.Response(502))
        with self.assertRaises(CiToolError):
            galaxy.wait(timeout=0, interval=0)

    def test_stop_tolerates_kill_failure(self) -> None:
        session = FakeSession([], fail_on=("docker kill",))
        galaxy = self._galaxy(session)
        galaxy.tmpdir = "/tmp/usegalaxy-tools.abc"
        galaxy.stop()
        self.assertEqual(
            session.commands,
            [
                "docker kill galaxy-g2test",
                "docker rm -v galaxy-g2test",
                "rm -rf /tmp/usegalaxy-tools.abc",
            ],
        )
        self.assertFalse(galaxy.running)

    def test_stop_does_not_hide_remove_failure(self) -> None:
        session = FakeSession([], fail_on=("docker rm",))
        galaxy = self._galaxy(session)
        with self.assertRaises(CiToolError):
            galaxy.stop()

    def test_show_logs_with_tail(self) -> None:
        session = FakeSession([])
        self._galaxy(session).show_logs(tail=500)
        self.assertEqual(session.commands, ["docker logs --tail 500 galaxy-g2test"])

    def test_close_leaves_injected_client_open(self) -> None:
        galaxy = self._galaxy(FakeSession([]))
        galaxy.close()
        self.assertFalse(galaxy.http.is_closed)

    def test_close_shuts_own_client(self) -> None:
        galaxy = GalaxyInstance(FakeSession([]), make_repo())
        galaxy.close()
        self.assertTrue(galaxy.http.is_closed)


class DownloadFileTests(unittest.TestCase):
    def test_writes_response_body(self) -> None:
        client = _client(lambda request: httpx.Response(200, content=b"SQLite format 3"))
        with tempfile.TemporaryDirectory() as temp_dir:
            destination = Path(temp_dir) / ".ci" / "galaxy.sqlite"
            download_file(client, "https://example.org/galaxy.sqlite", destination)
            self.assertEqual(destination.read_bytes(), b"SQLite format 3")

    def test_http_error_is_fatal(self) -> None:
        client = _client(lambda request: httpx.Response(404))
        with tempfile.TemporaryDirectory() as temp_dir:
            with self.assertRaises(CiToolError):
                download_file(client, "https://example.org/missing.sqlite", Path(temp_dir) / "x")


if __name__ == "__main__":
    unittest.main()
