from pathlib import Path
from tempfile import TemporaryDirectory
import os
import signal
import subprocess
import sys
import time
import unittest

import yaml

from longtask.config import load_config
from longtask.errors import UnknownSessionError
from longtask.models import JobStatus, StatusView
from longtask.runtime import open_runtime

from support import quiet_logger

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


class RecordingSpawn:
    def __init__(self) -> None:
        self.processes: list[subprocess.Popen] = []

    def __call__(self, command_line: list[str], **kwargs: object) -> subprocess.Popen:
        process = subprocess.Popen(command_line, **kwargs)
        self.processes.append(process)
        return process


class WorkerProcessTest(unittest.TestCase):
    """Real child processes against the real psutil health checker."""

    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        root = Path(self.temp_dir.name)
        config_path = root / "longtask.yaml"
        config_path.write_text(
            yaml.safe_dump(
                {
                    "paths": {"db": "./longtask.db", "log": "./longtask.log"},
                    "limits": {"listen_interval_seconds": 0.05},
                }
            ),
            encoding="utf-8",
        )
        self.config = load_config(config_path)
        self.spawn = RecordingSpawn()
        self.runtime = open_runtime(self.config, logger=quiet_logger(), spawn=self.spawn)
        self.store = self.runtime.store
        self.children: list[subprocess.Popen] = []

        # Launched workers must import longtask even when it is not installed.
        self.previous_pythonpath = os.environ.get("PYTHONPATH")
        os.environ["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), self.previous_pythonpath]))

    def tearDown(self) -> None:
        if self.previous_pythonpath is None:
            os.environ.pop("PYTHONPATH", None)
        else:
            os.environ["PYTHONPATH"] = self.previous_pythonpath
        for process in self.children + self.spawn.processes:
            if process.poll() is None:
                process.kill()
            process.wait(timeout=10)
        self.runtime.close()
        self.temp_dir.cleanup()

    def sleeper(self) -> subprocess.Popen:
        process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        self.children.append(process)
        return process

    def poll_until_done(self, session_id: int, timeout: float = 30.0) -> StatusView:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            view = self.runtime.poller.get_status(session_id)
            if view.done:
                return view
            time.sleep(0.1)
        self.fail(f"session {session_id} did not finish within {timeout} seconds")

    def test_killed_worker_is_reported_gone(self) -> None:
        process = self.sleeper()
        session_id = self.store.insert_job("REINDEX", "sleep", JobStatus.RUNNING, process.pid)
        view = self.runtime.poller.get_status(session_id)
        self.assertEqual(view.code, 200)
        self.assertFalse(view.done)

        process.send_signal(signal.SIGKILL)
        process.wait(timeout=10)
        view = self.runtime.poller.get_status(session_id)
        self.assertEqual(view.code, 410)
        self.assertEqual(
            view.message,
            f"Spawned task with process ID {process.pid} seems to have died without notice",
        )
        with self.assertRaises(UnknownSessionError):
            self.runtime.poller.get_status(session_id)

    def test_stop_terminates_worker(self) -> None:
        process = self.sleeper()
        session_id = self.store.insert_job("REINDEX", "sleep", JobStatus.RUNNING, process.pid)
        self.runtime.launcher.stop(session_id)
        self.assertEqual(process.wait(timeout=10), -signal.SIGTERM)
        self.assertIsNone(self.store.get_job(session_id))
        with self.assertRaises(UnknownSessionError):
            self.runtime.poller.get_status(session_id)

    def test_launched_count_job_runs_to_completion(self) -> None:
        handle = self.runtime.launcher.launch("COUNT", ["count", "--total", "3", "--delay", "0.05"])
        view = self.poll_until_done(handle.session_id)
        self.assertEqual(view.code, 200, view.message)
        self.assertEqual(view.progress, 100)
        self.assertEqual(self.spawn.processes[0].wait(timeout=30), 0)
        self.assertIsNone(self.store.get_job(handle.session_id))

    def test_failing_job_reports_error_and_exits_2(self) -> None:
        handle = self.runtime.launcher.launch("COUNT", ["count", "--total", "3", "--delay", "0.05", "--fail-at", "2"])
        view = self.poll_until_done(handle.session_id)
        self.assertEqual(view.code, 400)
        self.assertEqual(view.message, "Item 2 of 3 failed")
        self.assertEqual(self.spawn.processes[0].wait(timeout=30), 2)


if __name__ == "__main__":
    unittest.main()
