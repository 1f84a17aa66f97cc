from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .app_logging import log_with_fields
from .config import ServiceConfig
from .errors import LaunchError
from .runtime import Runtime
from .utils import join_args

START_WAIT_SECONDS = 5


class LongTaskService:
    """A long-running worker that registers itself instead of being launched with a session ID.

    The service counts as running while a live record with its description
    exists, whoever started it.
    """

    def __init__(
        self,
        runtime: Runtime,
        service: ServiceConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runtime = runtime
        self.service_id = service.service_id
        self.description = service.description
        self.args = list(service.args)
        self.autostart = service.autostart
        self.sleep = sleep

    def is_running(self) -> bool:
        return bool(self.runtime.guard.find_running([self.description]))

    def command_line(self) -> list[str]:
        return self.runtime.launcher.build_command(None, self.args)

    def describe_command_line(self) -> str:
        return join_args(self.command_line())

    def start(self) -> None:
        # No service lock here: holding it would hide the new record until we give up.
        command_line = self.command_line()
        log_path = self.runtime.config.paths.worker_logs / f"service-{self.service_id}.log"
        try:
            self.runtime.launcher.spawn_detached(command_line, log_path)
        except OSError as exc:
            raise LaunchError(f"Service {self.service_id} could not be spawned: {exc}") from exc

        for _ in range(START_WAIT_SECONDS):
            self.sleep(1)
            if self.is_running():
                log_with_fields(
                    self.runtime.logger,
                    logging.INFO,
                    "service_started",
                    service_id=self.service_id,
                    description=self.description,
                )
                return
        raise LaunchError(
            f"Service {self.service_id} failed to start: command {self.describe_command_line()!r} appears to have failed"
        )


def load_services(runtime: Runtime, *, sleep: Callable[[float], None] = time.sleep) -> list[LongTaskService]:
    return [LongTaskService(runtime, service, sleep=sleep) for service in runtime.config.services]


def autostart_all(
    services: list[LongTaskService],
    execute: bool,
    *,
    echo: Callable[[str], None] = print,
    sleep: Callable[[float], None] = time.sleep,
    settle_seconds: float = 5,
) -> int:
    """Starts every autostart service that is not running yet.

    Without ``execute`` nothing is started; the services that would be are
    listed instead. Returns the number of services started (or startable).
    """
    if execute and settle_seconds:
        echo(f"Sleeping {settle_seconds:g} seconds...")
        sleep(settle_seconds)

    could_start = started = 0
    for service in services:
        label = f"Service {service.service_id} ({service.description})"
        if service.is_running():
            echo(f"{label}: already running")
        elif not service.autostart:
            echo(f"{label}: autostart is disabled")
        elif not execute:
            could_start += 1
            echo(f"{label}: would start {service.describe_command_line()!r}")
        else:
            echo(f"{label}: STARTING {service.describe_command_line()!r}")
            service.start()
            echo(f"{label}: started.")
            started += 1

    if could_start:
        echo(f"Re-run with --execute (-x) to launch {could_start} missing service(s).")
    elif started:
        echo(f"{started} service(s) were started.")
    return could_start or started
