from pathlib import Path
from tempfile import TemporaryDirectory
import subprocess
import sys
import unittest

from longtask.errors import AlreadyRunningError, LaunchError, NotRunningError, UnknownSessionError
from longtask.models import JobStatus
from longtask.runtime import open_runtime

from support import FakeHealth, FakeSpawn, make_config, quiet_logger


class LauncherTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.config = make_config(self.root)
        self.health = FakeHealth()
        self.spawn = FakeSpawn()
        self.runtime = open_runtime(self.config, logger=quiet_logger(), health=self.health, spawn=self.spawn)
        self.launcher = self.runtime.launcher
        self.store = self.runtime.store

    def tearDown(self) -> None:
        self.runtime.close()
        self.temp_dir.cleanup()

    def test_build_command(self) -> None:
        command = self.launcher.build_command(7, ["count", "--total", "3"], "fr_FR")
        self.assertEqual(
            command,
            [
                sys.executable,
                "-m",
                "longtask.cli",
                "--config",
                str(self.config.source),
                "--session-id",
                "7",
                "--lang",
                "fr_FR",
                "count",
                "--total",
                "3",
            ],
        )
        self.assertNotIn("--session-id", self.launcher.build_command(None, ["daemon"]))

    def test_launch_records_spawning_and_spawns_detached(self) -> None:
        handle = self.launcher.launch("REINDEX", ["count", "--total", "3"])
        job = self.store.get_job(handle.session_id)
        assert job is not None
        self.assertEqual(job.status, JobStatus.SPAWNING)
        self.assertIsNone(job.process_id)
        self.assertEqual(job.command, "count --total 3")
        self.assertEqual(self.spawn.calls, [handle.command_line])
        self.assertEqual(handle.command_line[-5:], ["--session-id", str(handle.session_id), "count", "--total", "3"])

        kwargs = self.spawn.kwargs[0]
        self.assertTrue(kwargs["start_new_session"])
        self.assertEqual(kwargs["stdin"], subprocess.DEVNULL)
        self.assertTrue((self.config.paths.worker_logs / f"session-{handle.session_id}.log").exists())
        self.assertFalse(self.store.in_transaction)

    def test_back_to_back_singleton_launches(self) -> None:
        first = self.launcher.launch("REINDEX", ["count", "--total", "3"], "reindexer")
        with self.assertRaises(AlreadyRunningError) as ctx:
            self.launcher.launch("REINDEX", ["count", "--total", "3"], "reindexer")
        self.assertEqual(ctx.exception.session_ids, [first.session_id])
        self.assertEqual(len(self.store.list_jobs("REINDEX")), 1)
        self.assertEqual(len(self.spawn.calls), 1)

        # Without the singleton flag, a second instance is allowed.
        self.launcher.launch("REINDEX", ["count", "--total", "3"])
        self.assertEqual(len(self.store.list_jobs("REINDEX")), 2)

    def test_spawn_failure_removes_record(self) -> None:
        self.launcher.spawn = FakeSpawn(error=FileNotFoundError("no such interpreter"))
        with self.assertRaisesRegex(LaunchError, "no such interpreter"):
            self.launcher.launch("REINDEX", ["count", "--total", "3"], "reindexer")
        self.assertEqual(self.store.list_jobs(), [])
        self.assertFalse(self.store.service_lock.held)

    def test_stop(self) -> None:
        with self.assertRaises(UnknownSessionError):
            self.launcher.stop(999)

        spawning = self.launcher.launch("REINDEX", ["count", "--total", "3"])
        with self.assertRaises(NotRunningError):
            self.launcher.stop(spawning.session_id)

        session_id = self.store.insert_job("MAIL", "daemon", JobStatus.RUNNING, 4242)
        self.health.alive.add(4242)
        self.launcher.stop(session_id)
        self.assertEqual(self.health.terminated, [4242])
        self.assertIsNone(self.store.get_job(session_id))


if __name__ == "__main__":
    unittest.main()
