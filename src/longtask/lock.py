from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .app_logging import LOGGER_NAME

if TYPE_CHECKING:
    from .store import Store


class ServiceLock:
    """Database-wide advisory lock shared by every subsystem on a store.

    Acquiring opens ``BEGIN IMMEDIATE``, which takes SQLite's write lock and
    blocks every other process's writers (up to the busy timeout) until the
    outermost release commits. The lock is reentrant: nested acquire/release
    pairs only count depth, so a caller already holding it (a mail-queue
    drain, say) can launch a singleton job without deadlocking itself.
    """

    def __init__(self, store: Store, name: str = "services") -> None:
        self.store = store
        self.name = name
        self.depth = 0
        self.logger = logging.getLogger(LOGGER_NAME)

    @property
    def held(self) -> bool:
        return self.depth > 0

    def acquire(self) -> ServiceLock:
        if self.depth == 0:
            self.logger.debug("locking %s", self.name)
            self.store.begin_immediate()
            self.logger.debug("locked %s", self.name)
        self.depth += 1
        return self

    def release(self) -> None:
        if self.depth == 0:
            raise RuntimeError(f"Lock {self.name} released without being held")
        if self.depth == 1:
            self.store.commit()
        self.depth -= 1
        if self.depth == 0:
            self.logger.debug("unlocked %s", self.name)

    def reset(self) -> None:
        """Forget any nesting after the transaction was rolled back underneath us."""
        self.depth = 0

    def __enter__(self) -> ServiceLock:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        if self.depth == 0:
            # Rolled back inside the block, e.g. by a terminal error report.
            return
        self.release()
