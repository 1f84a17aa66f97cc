from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .app_logging import setup_logger
from .channel import ChannelNotifier
from .config import AppConfig, ensure_local_paths
from .health import ProcessHealthChecker
from .launcher import Launcher
from .poller import StatusPoller
from .singleton import SingletonGuard
from .store import Store


@dataclass(slots=True)
class Runtime:
    config: AppConfig
    logger: logging.Logger
    store: Store
    health: ProcessHealthChecker
    guard: SingletonGuard
    notifier: ChannelNotifier
    launcher: Launcher
    poller: StatusPoller

    def close(self) -> None:
        self.store.close()


def open_runtime(
    config: AppConfig,
    *,
    logger: logging.Logger | None = None,
    health: ProcessHealthChecker | None = None,
    spawn: Callable[..., Any] | None = None,
    stream_logs: bool = True,
) -> Runtime:
    ensure_local_paths(config)
    if logger is None:
        logger = setup_logger(config.paths.log, config.log_level, stream=stream_logs)
    limits = config.limits
    store = Store(config.paths.db, busy_timeout=limits.busy_timeout_seconds)
    store.init_schema()

    health = health or ProcessHealthChecker()
    guard = SingletonGuard(
        store,
        health,
        logger,
        stale_after_hours=limits.stale_after_hours,
        spawn_grace_seconds=limits.spawn_grace_seconds,
    )
    notifier = ChannelNotifier(
        store,
        logger,
        listen_timeout=limits.listen_timeout_seconds,
        listen_interval=limits.listen_interval_seconds,
        retention_seconds=limits.event_retention_seconds,
    )
    if spawn is None:
        launcher = Launcher(config, store, guard, health, logger)
    else:
        launcher = Launcher(config, store, guard, health, logger, spawn=spawn)
    poller = StatusPoller(store, guard, logger)
    return Runtime(
        config=config,
        logger=logger,
        store=store,
        health=health,
        guard=guard,
        notifier=notifier,
        launcher=launcher,
        poller=poller,
    )
