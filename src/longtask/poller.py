from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from .app_logging import log_with_fields
from .errors import UnknownSessionError
from .models import CODE_GONE, CODE_OK, JobRecord, JobStatus, StatusView
from .progress import compute_progress
from .singleton import SingletonGuard
from .store import Store
from .utils import age_seconds, utc_now

# Recomputed on every poll; stale copies from the worker's last write are dropped.
_COMPUTED_KEYS = frozenset(
    {"progress", "secondsPassed", "secondsRemaining", "timeRemaining", "fDone", "cCurrentFormatted", "cTotalFormatted"}
)


class StatusPoller:
    """Answers "how far along is session N?" from the record alone.

    A view is terminal when the worker finished, reported an error, or is
    found dead. Terminal views delete the record before they are returned,
    so the next poll for the same session gets :class:`UnknownSessionError`.
    """

    def __init__(
        self,
        store: Store,
        guard: SingletonGuard,
        logger: logging.Logger,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.guard = guard
        self.health = guard.health
        self.logger = logger
        self.now_fn = now_fn

    def get_status(self, session_id: int, timeout_hint: float | None = None) -> StatusView:
        # timeout_hint is accepted from clients but the poll never waits.
        job = self.store.get_job(session_id)
        if job is None:
            raise UnknownSessionError(session_id)
        if self.guard.is_stale(job):
            self.store.delete_job(session_id)
            log_with_fields(self.logger, logging.INFO, "stale_sessions_swept", session_ids=[session_id])
            raise UnknownSessionError(session_id)

        now = self.now_fn()
        seconds_passed = int(age_seconds(job.started_at, now))

        if job.status == JobStatus.SPAWNING:
            if self.guard.is_spawn_overdue(job):
                view = StatusView(
                    code=CODE_GONE,
                    done=True,
                    message=f"Session {session_id} was never picked up by a worker",
                    seconds_passed=seconds_passed,
                )
                return self._finish(job, view)
            return StatusView(code=CODE_OK, done=False, progress=0, seconds_passed=seconds_passed)

        if job.status == JobStatus.RUNNING and not self.health.is_running(job.process_id, job.status):
            log_with_fields(
                self.logger,
                logging.WARNING,
                "silent_death",
                session_id=session_id,
                description=job.description,
                pid=job.process_id,
            )
            view = StatusView(
                code=CODE_GONE,
                done=True,
                message=f"Spawned task with process ID {job.process_id} seems to have died without notice",
                seconds_passed=seconds_passed,
            )
            return self._finish(job, view)

        view = self._view_from_payload(job, now, seconds_passed)
        if view.done:
            return self._finish(job, view)
        return view

    def _view_from_payload(self, job: JobRecord, now: datetime, seconds_passed: int) -> StatusView:
        payload = job.payload()
        ended = job.status == JobStatus.ENDED
        if payload is None:
            return StatusView(code=CODE_OK, done=ended, progress=0, seconds_passed=seconds_passed)

        view = StatusView(
            code=payload.code,
            done=ended or not payload.ok,
            message=payload.message,
            current=payload.current,
            total=payload.total,
            seconds_passed=seconds_passed,
            dialog_field=payload.dialog_field,
            extra={key: value for key, value in payload.extra.items() if key not in _COMPUTED_KEYS},
        )
        if payload.current is not None and payload.total is not None:
            figures = compute_progress(job.started_at, payload.current, payload.total, now, done=view.done)
            view.done = figures.done
            view.progress = figures.progress
            view.seconds_passed = figures.seconds_passed
            view.seconds_remaining = figures.seconds_remaining
            view.time_remaining = figures.time_remaining
        return view

    def _finish(self, job: JobRecord, view: StatusView) -> StatusView:
        self.store.delete_job(job.session_id)
        log_with_fields(
            self.logger,
            logging.INFO,
            "session_finished",
            session_id=job.session_id,
            description=job.description,
            code=view.code,
        )
        return view

