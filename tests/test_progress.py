from datetime import timedelta
import unittest

from longtask.models import StatusView
from longtask.progress import compute_progress, describe_remaining
from longtask.utils import utc_now


class ProgressTest(unittest.TestCase):
    def test_describe_remaining(self) -> None:
        self.assertEqual(describe_remaining(59), "Less than a minute remaining")
        self.assertEqual(describe_remaining(60), "Less than two minutes remaining")
        self.assertEqual(describe_remaining(119), "Less than two minutes remaining")
        self.assertEqual(describe_remaining(120), "2 minutes remaining")
        self.assertEqual(describe_remaining(300), "5 minutes remaining")
        self.assertEqual(describe_remaining(330), "6 minutes remaining")

    def test_linear_estimate(self) -> None:
        now = utc_now()
        started = (now - timedelta(seconds=100)).isoformat()
        figures = compute_progress(started, 25, 100, now)
        self.assertFalse(figures.done)
        self.assertEqual(figures.progress, 25)
        self.assertEqual(figures.seconds_passed, 100)
        self.assertEqual(figures.seconds_remaining, 300)
        self.assertEqual(figures.time_remaining, "5 minutes remaining")

    def test_no_estimate_in_first_seconds(self) -> None:
        now = utc_now()
        figures = compute_progress((now - timedelta(seconds=3)).isoformat(), 10, 100, now)
        self.assertEqual(figures.progress, 10)
        self.assertIsNone(figures.seconds_remaining)
        self.assertIsNone(figures.time_remaining)

    def test_complete_and_zero_total(self) -> None:
        now = utc_now()
        started = (now - timedelta(seconds=30)).isoformat()
        done = compute_progress(started, 7, 7, now)
        self.assertTrue(done.done)
        self.assertEqual(done.progress, 100)
        self.assertEqual(done.seconds_remaining, 0)
        self.assertIsNone(done.time_remaining)

        empty = compute_progress(started, 0, 0, now)
        self.assertIsNone(empty.progress)
        self.assertFalse(empty.done)

    def test_status_view_formats_counts(self) -> None:
        view = StatusView(code=200, done=False, current=12500, total=1000000, progress=1)
        body = view.to_dict()
        self.assertEqual(body["cCurrentFormatted"], "12,500")
        self.assertEqual(body["cTotalFormatted"], "1,000,000")
        self.assertEqual(body["status"], "OK")
        self.assertFalse(body["fDone"])
        self.assertNotIn("timeRemaining", body)


if __name__ == "__main__":
    unittest.main()
