from __future__ import annotations

import argparse
import json
import logging
import sys

from .app_logging import log_with_fields
from .config import AppConfig, load_config
from .errors import LongTaskError
from .jobs import JOBS, Job, JobContext
from .models import CODE_ERROR
from .runtime import Runtime, open_runtime
from .services import autostart_all, load_services
from .task import TaskHandle

TOP_LEVEL_OPTIONS = {"--config", "--session-id", "--lang"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="longtask", description="Background job orchestrator")
    parser.add_argument("--config", required=True, help="Path to longtask YAML config")
    parser.add_argument("--session-id", type=int, default=None, help="Session to pick up (set by the launcher)")
    parser.add_argument("--lang", default=None, help="Language the worker should report in")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the HTTP API")

    launch = subparsers.add_parser("launch", help="Launch a job in the background")
    launch.add_argument("description", help="Record description, e.g. REINDEX")
    launch.add_argument("--singleton", default=None, help="Refuse if a job with this description runs")
    launch.add_argument("job_args", nargs=argparse.REMAINDER, help="Job name followed by its arguments")

    progress = subparsers.add_parser("progress", help="Poll a session once")
    progress.add_argument("session", type=int)

    listen = subparsers.add_parser("listen", help="Wait for the next event on a channel")
    listen.add_argument("channel")
    listen.add_argument("--timeout", type=float, default=None)
    listen.add_argument("--after", type=int, default=None, help="Resume after this event id")

    stop = subparsers.add_parser("stop", help="Terminate a running session")
    stop.add_argument("session", type=int)

    subparsers.add_parser("status", help="List session records")
    subparsers.add_parser("services", help="Show configured services")

    autostart = subparsers.add_parser("autostart-services", help="Start autostart services that are not running")
    autostart.add_argument("-x", "--execute", action="store_true", help="Actually start them")

    for job in JOBS.values():
        job.add_arguments(subparsers.add_parser(job.name, help=job.help))
    return parser


def _job_argv(argv: list[str], name: str) -> list[str]:
    skip_value = False
    for idx, item in enumerate(argv):
        if skip_value:
            skip_value = False
            continue
        if item in TOP_LEVEL_OPTIONS:
            skip_value = True
            continue
        if item == name:
            return argv[idx:]
    return [name]


def _print_json(payload: object) -> None:
    print(json.dumps(payload, sort_keys=True))


def cmd_serve(config: AppConfig) -> int:
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(config), host=config.api.host, port=config.api.port)
    return 0


def cmd_launch(runtime: Runtime, description: str, job_args: list[str], singleton: str | None, lang: str | None) -> int:
    if job_args and job_args[0] == "--":
        job_args = job_args[1:]
    if not job_args or job_args[0] not in JOBS:
        print(f"unknown job: {job_args[0] if job_args else '(none)'}", file=sys.stderr)
        return 2
    handle = runtime.launcher.launch(description, job_args, singleton, lang)
    _print_json({"sessionId": handle.session_id, "description": handle.description})
    return 0


def cmd_progress(runtime: Runtime, session_id: int) -> int:
    view = runtime.poller.get_status(session_id)
    body = view.to_dict()
    body["idSession"] = session_id
    _print_json(body)
    return 0 if view.ok else 1


def cmd_listen(runtime: Runtime, channel: str, timeout: float | None, after: int | None) -> int:
    body, _ = runtime.notifier.listen(channel, timeout, after).to_response()
    _print_json(body)
    return 0


def cmd_stop(runtime: Runtime, session_id: int) -> int:
    runtime.launcher.stop(session_id)
    print(f"stopped session {session_id}")
    return 0


def cmd_status(runtime: Runtime) -> int:
    jobs = runtime.store.list_jobs()
    print("Sessions:")
    if not jobs:
        print("  (none)")
    for job in jobs:
        live = "live" if runtime.guard.is_live(job) else "dead"
        print(
            "  "
            f"{job.session_id}: {job.description} status={job.status.name} pid={job.process_id} "
            f"{live} updated={job.updated_at}"
        )
    return 0


def cmd_services(runtime: Runtime) -> int:
    services = load_services(runtime)
    if not services:
        print("(no services configured)")
    for service in services:
        state = "running" if service.is_running() else "stopped"
        autostart = " autostart" if service.autostart else ""
        print(f"{service.service_id}: {service.description} {state}{autostart} -> {service.describe_command_line()}")
    return 0


def cmd_autostart(runtime: Runtime, execute: bool) -> int:
    autostart_all(load_services(runtime), execute)
    return 0


def cmd_job(runtime: Runtime, job: Job, args: argparse.Namespace, job_argv: list[str]) -> int:
    """Worker entry: pick up the session first, then run the job body.

    Any exception out of the job ends the session with an error status and
    exit code 2. Interrupts end it the same way but keep propagating.
    """
    handle = None
    if args.session_id is not None:
        handle = TaskHandle.pick_up_session(
            runtime.store, runtime.notifier, args.session_id, runtime.logger, install_error_trap=False
        )
    try:
        return job.run(JobContext(runtime=runtime, handle=handle, argv=job_argv), args)
    except Exception as exc:
        runtime.logger.exception("job %s failed", job.name)
        if handle is not None and not handle.ended:
            handle.set_status(CODE_ERROR, str(exc), done=True)
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except BaseException as exc:
        # KeyboardInterrupt and friends propagate, but only after the record says why.
        if handle is not None and not isinstance(exc, SystemExit):
            log_with_fields(runtime.logger, logging.WARNING, "job_interrupted", job=job.name, error=repr(exc))
            handle.report_uncaught(exc)
        raise


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "serve":
        return cmd_serve(config)

    runtime = open_runtime(config)
    try:
        if args.command in JOBS:
            return cmd_job(runtime, JOBS[args.command], args, _job_argv(argv, args.command))
        if args.command == "launch":
            return cmd_launch(runtime, args.description, args.job_args, args.singleton, args.lang)
        if args.command == "progress":
            return cmd_progress(runtime, args.session)
        if args.command == "listen":
            return cmd_listen(runtime, args.channel, args.timeout, args.after)
        if args.command == "stop":
            return cmd_stop(runtime, args.session)
        if args.command == "status":
            return cmd_status(runtime)
        if args.command == "services":
            return cmd_services(runtime)
        if args.command == "autostart-services":
            return cmd_autostart(runtime, args.execute)
        parser.error(f"Unknown command: {args.command}")
        return 2
    except LongTaskError as exc:
        log_with_fields(runtime.logger, logging.WARNING, "command_failed", command=args.command, error=str(exc))
        print(f"error: {exc}", file=sys.stderr)
        return 2
    finally:
        runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
