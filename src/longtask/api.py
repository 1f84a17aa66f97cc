from __future__ import annotations

import logging
from collections.abc import Callable, Iterator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .app_logging import LOGGER_NAME, log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths
from .errors import (
    AlreadyRunningError,
    InvalidSessionStateError,
    LaunchError,
    LongTaskError,
    NotRunningError,
    UnknownSessionError,
)
from .jobs import JOBS
from .runtime import Runtime, open_runtime

ERROR_STATUS: list[tuple[type[LongTaskError], int]] = [
    (UnknownSessionError, 404),
    (AlreadyRunningError, 409),
    (NotRunningError, 409),
    (InvalidSessionStateError, 409),
    (LaunchError, 500),
]


class LaunchRequest(BaseModel):
    description: str
    args: list[str] = Field(min_length=1)
    singleton: str | None = None
    lang: str | None = None


class StopRequest(BaseModel):
    session: int


def error_body(code: int, message: str) -> dict:
    return {"code": code, "status": "error", "message": message}


def http_status(code: int) -> int:
    """Worker codes double as HTTP statuses; anything HTTP cannot carry becomes 400."""
    return code if 200 <= code <= 599 else 400


def create_app(config: AppConfig, runtime_factory: Callable[[], Runtime] | None = None) -> FastAPI:
    if runtime_factory is None:
        ensure_local_paths(config)
        logger = setup_logger(config.paths.log, config.log_level)

        def runtime_factory() -> Runtime:
            return open_runtime(config, logger=logger)

    app = FastAPI(title="longtask", description="Launch, poll and stop background jobs.")

    def get_runtime() -> Iterator[Runtime]:
        runtime = runtime_factory()
        try:
            yield runtime
        finally:
            runtime.close()

    @app.exception_handler(LongTaskError)
    async def longtask_error(request: Request, exc: LongTaskError) -> JSONResponse:
        status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
        body = error_body(status_code, str(exc))
        if isinstance(exc, AlreadyRunningError):
            body["sessionIds"] = exc.session_ids
        log_with_fields(
            logging.getLogger(LOGGER_NAME),
            logging.INFO,
            "request_failed",
            method=request.method,
            path=request.url.path,
            status=status_code,
            error=str(exc),
        )
        return JSONResponse(body, status_code=status_code)

    @app.post("/launch")
    def launch(req: LaunchRequest, runtime: Runtime = Depends(get_runtime)) -> JSONResponse:
        if req.args[0] not in JOBS:
            return JSONResponse(error_body(400, f"Unknown job {req.args[0]!r}"), status_code=400)
        handle = runtime.launcher.launch(req.description, req.args, req.singleton, req.lang)
        return JSONResponse({"sessionId": handle.session_id, "description": handle.description})

    @app.get("/progress")
    def progress(
        session: int = Query(...),
        timeout: float | None = Query(default=None),
        runtime: Runtime = Depends(get_runtime),
    ) -> JSONResponse:
        view = runtime.poller.get_status(session, timeout)
        body = view.to_dict()
        body["idSession"] = session
        return JSONResponse(body, status_code=http_status(view.code))

    @app.get("/listen")
    def listen(
        channel: str = Query(..., min_length=1),
        timeout: float | None = Query(default=None, ge=0),
        after: int | None = Query(default=None, ge=0),
        runtime: Runtime = Depends(get_runtime),
    ) -> JSONResponse:
        event = runtime.notifier.listen(channel, timeout, after)
        body, status_code = event.to_response()
        return JSONResponse(body, status_code=http_status(status_code))

    @app.post("/stop")
    def stop(req: StopRequest, runtime: Runtime = Depends(get_runtime)) -> JSONResponse:
        runtime.launcher.stop(req.session)
        return JSONResponse({})

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app
