from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

from longtask.config import AppConfig, LimitsConfig, PathsConfig, ServiceConfig
from longtask.models import JobStatus
from longtask.store import Store
from longtask.utils import utc_now


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("longtask-tests")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def make_config(
    root: Path,
    *,
    services: list[ServiceConfig] | None = None,
    **limits: float,
) -> AppConfig:
    return AppConfig(
        source=root / "longtask.yaml",
        paths=PathsConfig(db=root / "longtask.db", log=root / "longtask.log", worker_logs=root / "worker-logs"),
        limits=LimitsConfig(**limits),
        services=list(services or []),
    )


def backdate(store: Store, session_id: int, seconds: float) -> None:
    past = (utc_now() - timedelta(seconds=seconds)).isoformat()
    store.conn.execute(
        "UPDATE longtasks SET started_dt = ?, updated_dt = ? WHERE i = ?",
        (past, past, session_id),
    )


class FakeHealth:
    def __init__(self, alive: set[int] | None = None) -> None:
        self.alive: set[int] = set(alive or ())
        self.terminated: list[int] = []

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def is_running(self, pid: int | None, status: JobStatus) -> bool:
        return pid is not None and status == JobStatus.RUNNING and self.is_alive(pid)

    def terminate(self, pid: int) -> bool:
        if pid not in self.alive:
            return False
        self.alive.discard(pid)
        self.terminated.append(pid)
        return True


class FakeProcess:
    def __init__(self, pid: int) -> None:
        self.pid = pid


class FakeSpawn:
    def __init__(self, *, error: OSError | None = None, on_spawn: Callable[[list[str]], None] | None = None) -> None:
        self.error = error
        self.on_spawn = on_spawn
        self.calls: list[list[str]] = []
        self.kwargs: list[dict] = []

    def __call__(self, command_line: list[str], **kwargs: object) -> FakeProcess:
        if self.error is not None:
            raise self.error
        self.calls.append(list(command_line))
        self.kwargs.append(dict(kwargs))
        if self.on_spawn is not None:
            self.on_spawn(command_line)
        return FakeProcess(pid=40000 + len(self.calls))
