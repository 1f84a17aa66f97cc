from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from .app_logging import log_with_fields
from .models import ChannelEvent, EventType
from .store import Store
from .utils import utc_now


class ChannelNotifier:
    """Publish/subscribe over the ``channel_events`` table.

    Publishing appends a row; listening remembers the newest row id at the
    moment it starts and waits for anything newer. Every listener reads the
    same rows, so all of them see every event.
    """

    def __init__(
        self,
        store: Store,
        logger: logging.Logger,
        *,
        listen_timeout: float = 30.0,
        listen_interval: float = 0.3,
        retention_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.logger = logger
        self.listen_timeout = listen_timeout
        self.listen_interval = listen_interval
        self.retention_seconds = retention_seconds
        self.clock = clock
        self.sleep = sleep

    def notify(self, channel: str, event: EventType, session_id: int | None, data: Any) -> int:
        payload = ChannelEvent(event=event, session_id=session_id, data=data).to_dict()
        event_id = self.store.publish_event(channel, payload)
        cutoff = utc_now() - timedelta(seconds=self.retention_seconds)
        self.store.prune_events(cutoff.isoformat())
        self.logger.debug("published %s on %s for session %s", event.value, channel, session_id)
        return event_id

    def notify_started(self, channel: str, session_id: int, data: Any = None) -> int:
        return self.notify(channel, EventType.STARTED, session_id, data)

    def notify_progress(self, channel: str, session_id: int, data: Any) -> int:
        return self.notify(channel, EventType.PROGRESS, session_id, data)

    def notify_error(self, channel: str, session_id: int, data: Any) -> int:
        return self.notify(channel, EventType.ERROR, session_id, data)

    def listen(self, channel: str, timeout: float | None = None, after_id: int | None = None) -> ChannelEvent:
        """Blocks until something is published on ``channel`` or the timeout runs out.

        The wait never exceeds the configured listen ceiling, whatever the
        caller asks for. On timeout a TIMEOUT event is returned; callers are
        expected to simply listen again.
        """
        budget = self.listen_timeout if timeout is None else min(max(timeout, 0.0), self.listen_timeout)
        deadline = self.clock() + budget
        cursor = self.store.last_event_id(channel) if after_id is None else after_id

        while True:
            found = self.store.next_event(channel, cursor)
            if found is not None:
                event_id, payload = found
                return ChannelEvent.from_payload(payload, event_id=event_id)
            remaining = deadline - self.clock()
            if remaining <= 0:
                log_with_fields(self.logger, logging.DEBUG, "listen_timeout", channel=channel, waited=budget)
                return ChannelEvent(event=EventType.TIMEOUT)
            self.sleep(min(self.listen_interval, remaining))
