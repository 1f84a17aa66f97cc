from __future__ import annotations

import json
import logging
import os
import signal
import sys
from collections.abc import Callable
from enum import Enum
from types import FrameType
from typing import Any

from .app_logging import log_with_fields
from .channel import ChannelNotifier
from .errors import InvalidSessionStateError, UnknownSessionError
from .models import CODE_ERROR, CODE_OK, EventType, JobStatus, StatusPayload
from .progress import compute_progress
from .singleton import SingletonGuard
from .store import Store
from .utils import join_args, utc_now

TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class TaskState(str, Enum):
    RUNNING = "running"
    ENDED = "ended"


class TaskHandle:
    """The worker's own view of its session.

    Only the process that picked up (or registered) a session holds a handle
    for it, and only that handle ever writes the record's status. Every
    status write goes through one path that updates the record and, once a
    channel has been announced, publishes the same payload to listeners.
    """

    def __init__(
        self,
        store: Store,
        notifier: ChannelNotifier,
        session_id: int,
        description: str,
        command: str,
        started_at: str,
        logger: logging.Logger,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.session_id = session_id
        self.description = description
        self.command = command
        self.started_at = started_at
        self.logger = logger
        self.state = TaskState.RUNNING
        self.channel: str | None = None
        self.signal_received: int | None = None

    @classmethod
    def pick_up_session(
        cls,
        store: Store,
        notifier: ChannelNotifier,
        session_id: int,
        logger: logging.Logger,
        *,
        install_error_trap: bool = True,
    ) -> TaskHandle:
        job = store.get_job(session_id)
        if job is None:
            raise UnknownSessionError(session_id)
        if job.status != JobStatus.SPAWNING:
            raise InvalidSessionStateError(f"Invalid status {job.status.name} for session ID {session_id}")
        if not store.claim_job(session_id, os.getpid()):
            raise InvalidSessionStateError(f"Session ID {session_id} was picked up by another process")

        handle = cls(store, notifier, session_id, job.description, job.command, job.started_at, logger)
        if install_error_trap:
            handle.install_error_trap()
        log_with_fields(
            logger,
            logging.INFO,
            "session_picked_up",
            session_id=session_id,
            description=job.description,
            pid=os.getpid(),
        )
        return handle

    @classmethod
    def register_without_session_id(
        cls,
        store: Store,
        notifier: ChannelNotifier,
        guard: SingletonGuard,
        description: str,
        args: list[str],
        logger: logging.Logger,
        *,
        singleton_description: str | None = None,
    ) -> TaskHandle:
        """Creates a RUNNING record for the calling process itself.

        For processes nobody launched through :class:`Launcher`, such as a
        daemon started from a service manager.
        """
        command = join_args(args)
        lock = guard.ensure_singleton(description, singleton_description) if singleton_description else None
        try:
            session_id = store.insert_job(description, command, JobStatus.RUNNING, os.getpid())
        finally:
            if lock is not None:
                lock.release()

        job = store.get_job(session_id)
        started_at = job.started_at if job is not None else utc_now().isoformat()
        log_with_fields(
            logger,
            logging.INFO,
            "session_registered",
            session_id=session_id,
            description=description,
            pid=os.getpid(),
        )
        return cls(store, notifier, session_id, description, command, started_at, logger)

    @property
    def ended(self) -> bool:
        return self.state == TaskState.ENDED

    def set_status(
        self,
        code: int,
        message: str | None = None,
        fields: dict[str, Any] | None = None,
        done: bool = False,
        *,
        dialog_field: str | None = None,
    ) -> None:
        if self.ended:
            raise InvalidSessionStateError(f"Session {self.session_id} has already ended")

        raw: dict[str, Any] = dict(fields or {})
        raw["code"] = code
        if message is not None:
            raw["message"] = message
        if dialog_field is not None:
            raw["field"] = dialog_field
        payload = StatusPayload.from_dict(raw)

        if payload.ok:
            status = JobStatus.ENDED if done else JobStatus.RUNNING
            event = EventType.PROGRESS
        else:
            # An aborted transaction would swallow the final write.
            if self.store.rollback_open_transaction():
                self.logger.warning("rolled back open transaction before reporting error")
            status = JobStatus.ENDED
            event = EventType.ERROR

        self._status_changed(status, payload, event)
        if status == JobStatus.ENDED:
            self.state = TaskState.ENDED

    def _status_changed(self, status: JobStatus, payload: StatusPayload, event: EventType) -> None:
        data = payload.to_dict()
        self.store.update_job(
            self.session_id,
            status=status,
            process_id=os.getpid(),
            json_data=json.dumps(data, sort_keys=True),
        )
        if self.channel:
            self.notifier.notify(self.channel, event, self.session_id, data)
        log_with_fields(
            self.logger,
            logging.INFO if status == JobStatus.ENDED else logging.DEBUG,
            "status_written",
            session_id=self.session_id,
            status=status.name,
            code=payload.code,
            current=payload.current,
            total=payload.total,
        )

    def channel_notify_started(self, channel: str, data: Any = None) -> None:
        self.channel = channel
        self.store.update_job(self.session_id, channel=channel)
        self.notifier.notify_started(channel, self.session_id, data)

    def channel_notify_progress(self, data: dict[str, Any], done: bool = False) -> None:
        if not self.channel:
            raise InvalidSessionStateError("channel_notify_progress() requires channel_notify_started() first")
        for key in ("cCurrent", "cTotal"):
            if data.get(key) is None:
                raise ValueError(f"channel_notify_progress(): {key} must not be None")

        figures = compute_progress(self.started_at, int(data["cCurrent"]), int(data["cTotal"]), utc_now(), done=done)
        fields = dict(data)
        fields["secondsPassed"] = figures.seconds_passed
        if figures.progress is not None:
            fields["progress"] = figures.progress
        if figures.seconds_remaining is not None:
            fields["secondsRemaining"] = figures.seconds_remaining
        if figures.time_remaining is not None:
            fields["timeRemaining"] = figures.time_remaining
        fields["fDone"] = figures.done
        self.set_status(CODE_OK, fields=fields, done=figures.done)

    def channel_notify_error(self, message: str, data: dict[str, Any] | None = None, code: int = CODE_ERROR) -> None:
        if not self.channel:
            raise InvalidSessionStateError("channel_notify_error() requires channel_notify_started() first")
        self.set_status(code, message, fields=data, done=True)

    def delete_self(self) -> None:
        self.store.delete_job(self.session_id)
        self.state = TaskState.ENDED
        log_with_fields(self.logger, logging.INFO, "session_deleted", session_id=self.session_id)

    def report_uncaught(self, exc: BaseException) -> None:
        if self.ended:
            return
        self.set_status(CODE_ERROR, f"Uncaught {type(exc).__name__}: {exc}", done=True)

    def install_error_trap(self) -> Callable[..., Any]:
        """Routes uncaught exceptions into a terminal error status.

        The previous ``sys.excepthook`` still runs afterwards and is returned
        so callers can restore it.
        """
        previous = sys.excepthook

        def trap(exc_type, exc, tb) -> None:  # noqa: ANN001
            try:
                self.report_uncaught(exc)
            except Exception:
                self.logger.exception("could not record uncaught exception for session %s", self.session_id)
            previous(exc_type, exc, tb)

        sys.excepthook = trap
        return previous

    def register_signal_handlers(self) -> dict[int, Any]:
        """On SIGTERM/SIGINT, delete our own record and exit with ``128 + signum``.

        Returns the handlers that were replaced.
        """

        def handler(signum: int, frame: FrameType | None) -> None:
            self.signal_received = signum
            log_with_fields(
                self.logger,
                logging.WARNING,
                "signal_received",
                session_id=self.session_id,
                signal=signal.Signals(signum).name,
            )
            self.store.rollback_open_transaction()
            self.delete_self()
            raise SystemExit(128 + signum)

        return {signum: signal.signal(signum, handler) for signum in TERMINATION_SIGNALS}


def report_json(
    handle: TaskHandle | None,
    code: int,
    message: str | None = None,
    fields: dict[str, Any] | None = None,
    done: bool = False,
) -> None:
    """Reports status if this process runs under a session, otherwise does nothing.

    Lets job code report progress the same way whether it was launched by
    the orchestrator or started by hand.
    """
    if handle is None:
        return
    handle.set_status(code, message, fields, done)
