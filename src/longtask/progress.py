"""Progress percentage and remaining-time estimate.

The estimate is a straight linear projection of elapsed time over the
fraction completed. It is noisy for jobs whose items differ a lot in cost,
but the figures it produces are what existing clients display, so the
formula is kept as is.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from .utils import parse_iso

MIN_SECONDS_FOR_ESTIMATE = 5


@dataclass(slots=True)
class ProgressFigures:
    done: bool
    seconds_passed: int
    progress: int | None = None
    seconds_remaining: int | None = None
    time_remaining: str | None = None


def describe_remaining(seconds_remaining: int) -> str:
    if seconds_remaining < 60:
        return "Less than a minute remaining"
    if seconds_remaining < 120:
        return "Less than two minutes remaining"
    minutes = math.floor((seconds_remaining + 30) / 60)
    return f"{minutes:,} minutes remaining"


def compute_progress(
    started_at: str,
    current: int,
    total: int,
    now: datetime,
    *,
    done: bool = False,
) -> ProgressFigures:
    figures = ProgressFigures(done=done, seconds_passed=int((now - parse_iso(started_at)).total_seconds()))

    if total:
        if current >= total:
            figures.progress = 100
            figures.done = True
        else:
            figures.progress = math.floor(current * 100 / total)

    if current > 0 and total > 0 and figures.seconds_passed > MIN_SECONDS_FOR_ESTIMATE:
        percent = current * 100 / total
        seconds_total = math.floor(figures.seconds_passed * 100 / percent)
        figures.seconds_remaining = seconds_total - figures.seconds_passed
        if not figures.done:
            figures.time_remaining = describe_remaining(figures.seconds_remaining)

    return figures
