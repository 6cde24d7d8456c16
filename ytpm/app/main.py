from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from ytpm.app.api.routes import router
from ytpm.app.config import AppSettings
from ytpm.app.dependencies import (
    get_auto_resume_service,
    get_database,
    get_settings,
    get_telemetry,
)
from ytpm.app.logging_config import configure_application_logging
from ytpm.app.services.scheduler_service import SchedulerService
from ytpm.app.services.youtube_client import YouTubeClientError

LOGGER = logging.getLogger("ytpm.http")
REQUEST_ID_HEADER = "X-Request-ID"
SCHEDULER_LOCK_FILE_NAME = "scheduler.lock"

RequestHandler = Callable[[Request], Awaitable[Response]]


def _build_scheduler(settings: AppSettings) -> SchedulerService | None:
    if not settings.scheduler_enabled:
        LOGGER.info("auto-resume scheduler disabled")
        return None
    return SchedulerService(
        auto_resume_service=get_auto_resume_service(),
        poll_interval_seconds=settings.auto_resume_poll_interval_seconds,
        telemetry=get_telemetry(),
        lock_path=settings.data_dir / SCHEDULER_LOCK_FILE_NAME,
    )


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    get_database()
    scheduler = _build_scheduler(settings)
    app.state.scheduler_running = scheduler.start() if scheduler is not None else False
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


def _request_id_for(request: Request) -> str:
    supplied = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    return supplied or str(uuid4())


def _error_response(request: Request, status_code: int, detail: str) -> JSONResponse:
    # request.state survives past the middleware's contextvars reset.
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "request_id": request_id},
    )


async def _youtube_error_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.warning("youtube provider error path=%s error=%s", request.url.path, exc)
    return _error_response(request, 502, str(exc))


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.error("unhandled error path=%s", request.url.path, exc_info=exc)
    return _error_response(request, 500, "Internal server error")


async def _bind_request_context(request: Request, call_next: RequestHandler) -> Response:
    request_id = _request_id_for(request)
    request.state.request_id = request_id
    context_tokens = bind_contextvars(
        http_request_id=request_id,
        http_method=request.method,
        http_path=request.url.path,
    )
    try:
        with get_telemetry().span(
            "http.request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        ) as out:
            response = await call_next(request)
            out["status_code"] = response.status_code
    finally:
        reset_contextvars(**context_tokens)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def health(request: Request) -> dict[str, object]:
    return {
        "status": "ok",
        "scheduler_running": bool(getattr(request.app.state, "scheduler_running", False)),
    }


def create_app() -> FastAPI:
    app = FastAPI(title="YTPM Export API", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(_bind_request_context)
    app.add_exception_handler(YouTubeClientError, _youtube_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(router)
    app.add_api_route("/health", health, methods=["GET"], tags=["system"], operation_id="health")
    return app


app = create_app()
