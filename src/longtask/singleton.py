from __future__ import annotations

import logging
from collections.abc import Iterable

from .app_logging import log_with_fields
from .errors import AlreadyRunningError
from .health import ProcessHealthChecker
from .lock import ServiceLock
from .models import JobRecord, JobStatus
from .store import Store
from .utils import age_seconds

HIDDEN_COMMAND = "<hidden>"


class SingletonGuard:
    def __init__(
        self,
        store: Store,
        health: ProcessHealthChecker,
        logger: logging.Logger,
        *,
        stale_after_hours: float = 24,
        spawn_grace_seconds: float = 60,
    ) -> None:
        self.store = store
        self.health = health
        self.logger = logger
        self.stale_after_seconds = stale_after_hours * 3600
        self.spawn_grace_seconds = spawn_grace_seconds

    def is_stale(self, job: JobRecord) -> bool:
        return age_seconds(job.updated_at) > self.stale_after_seconds

    def is_spawn_overdue(self, job: JobRecord) -> bool:
        return job.status == JobStatus.SPAWNING and age_seconds(job.started_at) > self.spawn_grace_seconds

    def is_live(self, job: JobRecord) -> bool:
        if job.status == JobStatus.SPAWNING:
            return not self.is_spawn_overdue(job)
        return self.health.is_running(job.process_id, job.status)

    def find_running(self, descriptions: Iterable[str], *, reveal_command: bool = False) -> list[JobRecord]:
        """Returns the live sessions for the given descriptions, sweeping dead weight on the way.

        Stale rows and launches that were never picked up are deleted. The
        command line is sensitive and replaced by a placeholder unless
        ``reveal_command`` is set.
        """
        running: list[JobRecord] = []
        to_delete: list[int] = []
        for description in descriptions:
            for job in self.store.list_jobs(description):
                if self.is_stale(job) or self.is_spawn_overdue(job):
                    to_delete.append(job.session_id)
                elif self.is_live(job):
                    if not reveal_command:
                        job.command = HIDDEN_COMMAND
                    running.append(job)
                else:
                    self.logger.debug("ignoring session %s pid %s status %s", job.session_id, job.process_id, job.status)

        if to_delete:
            self.store.delete_jobs(to_delete)
            log_with_fields(self.logger, logging.INFO, "stale_sessions_swept", session_ids=to_delete)
        return running

    def is_running(self, description: str, command: str) -> bool:
        return any(job.command == command for job in self.find_running([description], reveal_command=True))

    def ensure_singleton(self, description: str, singleton_description: str) -> ServiceLock:
        """Takes the service lock and checks that nothing else runs under ``description``.

        On success the lock is returned still held; the caller inserts its
        own row and then releases it. On failure the lock is released before
        :class:`AlreadyRunningError` propagates.
        """
        lock = self.store.service_lock.acquire()
        try:
            running = self.find_running([description])
        except BaseException:
            lock.release()
            raise
        if running:
            lock.release()
            session_ids = [job.session_id for job in running]
            log_with_fields(
                self.logger,
                logging.WARNING,
                "singleton_already_running",
                description=description,
                singleton=singleton_description,
                session_ids=session_ids,
            )
            raise AlreadyRunningError(singleton_description, session_ids)
        return lock
