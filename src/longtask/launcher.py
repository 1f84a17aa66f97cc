from __future__ import annotations

import logging
import shlex
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .app_logging import log_with_fields
from .config import AppConfig
from .errors import LaunchError, NotRunningError, UnknownSessionError
from .health import ProcessHealthChecker
from .models import JobHandle, JobStatus
from .singleton import SingletonGuard
from .store import Store
from .utils import join_args


class Launcher:
    def __init__(
        self,
        config: AppConfig,
        store: Store,
        guard: SingletonGuard,
        health: ProcessHealthChecker,
        logger: logging.Logger,
        spawn: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self.config = config
        self.store = store
        self.guard = guard
        self.health = health
        self.logger = logger
        self.spawn = spawn

    def build_command(self, session_id: int | None, args: list[str], lang: str | None = None) -> list[str]:
        base = self.config.launch.command_template.format(
            python=shlex.quote(sys.executable),
            config=shlex.quote(str(self.config.source)),
        )
        command = shlex.split(base)
        if session_id is not None:
            command += ["--session-id", str(session_id)]
        if lang:
            command += ["--lang", lang]
        return command + [str(arg) for arg in args]

    def spawn_detached(self, command_line: list[str], log_path: Path) -> Any:
        """Starts a process that outlives us: own session, no stdin, output appended to ``log_path``."""
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("ab") as log_file:
            return self.spawn(
                command_line,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )

    def launch(
        self,
        description: str,
        args: list[str],
        singleton_description: str | None = None,
        lang: str | None = None,
    ) -> JobHandle:
        lock = self.guard.ensure_singleton(description, singleton_description) if singleton_description else None
        try:
            session_id = self.store.insert_job(description, join_args(args), JobStatus.SPAWNING)
        finally:
            if lock is not None:
                lock.release()

        command_line = self.build_command(session_id, args, lang or self.config.launch.lang)
        log_path = self.config.paths.worker_logs / f"session-{session_id}.log"
        try:
            process = self.spawn_detached(command_line, log_path)
        except OSError as exc:
            self.store.delete_job(session_id)
            log_with_fields(
                self.logger,
                logging.ERROR,
                "launch_failed",
                session_id=session_id,
                description=description,
                error=str(exc),
            )
            raise LaunchError(f"Could not spawn worker for {description}: {exc}") from exc

        log_with_fields(
            self.logger,
            logging.INFO,
            "job_launched",
            session_id=session_id,
            description=description,
            worker_pid=getattr(process, "pid", None),
            worker_log=str(log_path),
        )
        return JobHandle(session_id=session_id, description=description, command_line=command_line)

    def stop(self, session_id: int) -> None:
        job = self.store.get_job(session_id)
        if job is None:
            raise UnknownSessionError(session_id)
        if job.process_id is None or not self.health.is_running(job.process_id, job.status):
            raise NotRunningError(session_id)

        self.health.terminate(job.process_id)
        self.store.delete_job(session_id)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_stopped",
            session_id=session_id,
            description=job.description,
            pid=job.process_id,
        )
