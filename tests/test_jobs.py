from pathlib import Path
from tempfile import TemporaryDirectory
import argparse
import os
import signal
import unittest

from longtask.errors import AlreadyRunningError
from longtask.jobs import JOBS, JobContext
from longtask.models import JobStatus
from longtask.runtime import open_runtime
from longtask.task import TaskHandle

from support import FakeHealth, FakeSpawn, make_config, quiet_logger


def parse(job_name: str, *argv: str) -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    JOBS[job_name].add_arguments(parser)
    return parser.parse_args(list(argv))


class JobsTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        self.health = FakeHealth(alive={os.getpid()})
        self.runtime = open_runtime(
            make_config(Path(self.temp_dir.name)),
            logger=quiet_logger(),
            health=self.health,
            spawn=FakeSpawn(),
        )
        self.store = self.runtime.store
        self.sleeps: list[float] = []
        self.previous_handlers = {signum: signal.getsignal(signum) for signum in (signal.SIGTERM, signal.SIGINT)}

    def tearDown(self) -> None:
        for signum, handler in self.previous_handlers.items():
            signal.signal(signum, handler)
        self.runtime.close()
        self.temp_dir.cleanup()

    def context(self, handle: TaskHandle | None, argv: list[str]) -> JobContext:
        return JobContext(runtime=self.runtime, handle=handle, argv=argv, sleep=self.sleeps.append)

    def picked_up(self) -> TaskHandle:
        launched = self.runtime.launcher.launch("COUNT", ["count", "--total", "4"])
        return TaskHandle.pick_up_session(
            self.store, self.runtime.notifier, launched.session_id, self.runtime.logger, install_error_trap=False
        )

    def events(self, channel: str) -> list[dict]:
        output = []
        cursor = 0
        while (found := self.store.next_event(channel, cursor)) is not None:
            cursor, payload = found
            output.append(payload)
        return output

    def test_count_publishes_progress(self) -> None:
        handle = self.picked_up()
        args = parse("count", "--total", "4", "--delay", "0.25", "--channel", "counting")
        self.assertEqual(JOBS["count"].run(self.context(handle, ["count"]), args), 0)
        self.assertEqual(self.sleeps, [0.25] * 4)
        self.assertTrue(handle.ended)

        events = self.events("counting")
        self.assertEqual([event["event"] for event in events], ["started"] + ["progress"] * 5)
        self.assertEqual([event["data"]["cCurrent"] for event in events[1:]], [0, 1, 2, 3, 4])
        self.assertTrue(events[-1]["data"]["fDone"])
        job = self.store.get_job(handle.session_id)
        assert job is not None
        self.assertEqual(job.status, JobStatus.ENDED)

    def test_count_fail_at_raises(self) -> None:
        args = parse("count", "--total", "4", "--fail-at", "3")
        with self.assertRaisesRegex(RuntimeError, "Item 3 of 4 failed"):
            JOBS["count"].run(self.context(None, ["count"]), args)
        self.assertEqual(len(self.sleeps), 2)

    def test_daemon_singleton_and_cleanup(self) -> None:
        args = parse("daemon", "--description", "MAIL_DAEMON", "--singleton", "mailer", "--beats", "3", "--interval", "2")
        self.assertEqual(JOBS["daemon"].run(self.context(None, ["daemon"]), args), 0)
        self.assertEqual(self.sleeps, [2.0, 2.0, 2.0])
        self.assertEqual(self.store.list_jobs("MAIL_DAEMON"), [])
        self.assertFalse(self.store.service_lock.held)

        self.store.insert_job("MAIL_DAEMON", "daemon", JobStatus.RUNNING, os.getpid())
        with self.assertRaises(AlreadyRunningError):
            JOBS["daemon"].run(self.context(None, ["daemon"]), args)


if __name__ == "__main__":
    unittest.main()
