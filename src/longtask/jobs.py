from __future__ import annotations

import argparse
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .app_logging import log_with_fields
from .models import CODE_OK
from .runtime import Runtime
from .task import TaskHandle, report_json


@dataclass(slots=True)
class JobContext:
    runtime: Runtime
    handle: TaskHandle | None
    argv: list[str]
    sleep: Callable[[float], None] = field(default=time.sleep)


@dataclass(slots=True)
class Job:
    name: str
    help: str
    add_arguments: Callable[[argparse.ArgumentParser], None]
    run: Callable[[JobContext, argparse.Namespace], int]


def _count_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--total", type=int, required=True, help="Number of items to process")
    parser.add_argument("--delay", type=float, default=0.5, help="Seconds spent on each item")
    parser.add_argument("--channel", default=None, help="Publish progress on this channel")
    parser.add_argument("--fail-at", type=int, default=None, help="Raise when reaching this item")


def run_count(ctx: JobContext, args: argparse.Namespace) -> int:
    handle = ctx.handle
    total = max(args.total, 0)
    if handle is not None and args.channel:
        handle.channel_notify_started(args.channel, {"cTotal": total})

    def report(current: int) -> None:
        data = {"cCurrent": current, "cTotal": total}
        if handle is not None and handle.channel:
            handle.channel_notify_progress(data, done=current >= total)
        else:
            report_json(handle, CODE_OK, fields=data, done=current >= total)

    report(0)
    for current in range(1, total + 1):
        if args.fail_at is not None and current == args.fail_at:
            raise RuntimeError(f"Item {current} of {total} failed")
        ctx.sleep(args.delay)
        report(current)
    print(f"processed {total} item(s)")
    return 0


def _daemon_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--description", required=True, help="Record description the daemon runs under")
    parser.add_argument("--interval", type=float, default=5.0, help="Seconds between heartbeats")
    parser.add_argument("--singleton", default=None, help="Refuse to start if another one runs, using this name")
    parser.add_argument("--channel", default=None, help="Publish heartbeats on this channel")
    parser.add_argument("--beats", type=int, default=None, help="Exit after this many heartbeats")


def run_daemon(ctx: JobContext, args: argparse.Namespace) -> int:
    runtime = ctx.runtime
    handle = ctx.handle
    if handle is None:
        handle = TaskHandle.register_without_session_id(
            runtime.store,
            runtime.notifier,
            runtime.guard,
            args.description,
            ctx.argv,
            runtime.logger,
            singleton_description=args.singleton,
        )
    handle.register_signal_handlers()
    if args.channel:
        handle.channel_notify_started(args.channel, {"description": args.description})

    beats = 0
    try:
        while args.beats is None or beats < args.beats:
            # Periodic work shares the lock with launchers and other services.
            with runtime.store.service_lock:
                beats += 1
                handle.set_status(CODE_OK, f"Heartbeat {beats}", fields={"beats": beats})
            log_with_fields(runtime.logger, logging.DEBUG, "daemon_heartbeat", session_id=handle.session_id, beats=beats)
            ctx.sleep(args.interval)
    finally:
        if not handle.ended:
            handle.delete_self()
    return 0


JOBS: dict[str, Job] = {
    job.name: job
    for job in (
        Job("count", "Count through N items, reporting progress", _count_arguments, run_count),
        Job("daemon", "Heartbeat until terminated", _daemon_arguments, run_daemon),
    )
}


def get_job(name: str) -> Job | None:
    return JOBS.get(name)
