from __future__ import annotations

import psutil

from .models import JobStatus


class ProcessHealthChecker:
    """PID liveness as seen from any process on this machine."""

    def is_alive(self, pid: int) -> bool:
        try:
            process = psutil.Process(pid)
            return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists, but belongs to someone we may not inspect.
            return True

    def is_running(self, pid: int | None, status: JobStatus) -> bool:
        """True if the record claims RUNNING and its process actually exists."""
        if pid is None or status != JobStatus.RUNNING:
            return False
        return self.is_alive(pid)

    def terminate(self, pid: int) -> bool:
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            return False
        return True
