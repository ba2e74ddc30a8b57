from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ralphy_api.broadcast import LogBroadcaster
from ralphy_api.config import Settings, load_settings
from ralphy_api.documents import DocumentValidationError, ensure_valid_document
from ralphy_api.runner import (
    AlreadyRunningError,
    InvalidCommandError,
    NotRunningError,
    RunnerSupervisor,
)
from ralphy_api.schemas import ErrorResponse, OkResponse, RunnerStartRequest, RunnerStatus
from ralphy_api.store import StoreError, TaskFileStore

logger = logging.getLogger(__name__)

_SERVER_ERROR = {500: {"model": ErrorResponse}}
_CONFLICT = {409: {"model": ErrorResponse}}
_BAD_DOCUMENT = {
    400: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    store = TaskFileStore(settings.tasks_file, settings.progress_file)
    broadcaster = LogBroadcaster(
        max_lines=settings.log_buffer_lines,
        queue_size=settings.subscriber_queue_size,
    )
    supervisor = RunnerSupervisor(broadcaster, stop_grace_seconds=settings.stop_grace_seconds)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await supervisor.shutdown()

    app = FastAPI(title="ralphy api", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.broadcaster = broadcaster
    app.state.supervisor = supervisor

    # single-user local tool
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": _describe_request_error(exc)})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/tasks", responses=_SERVER_ERROR)
    def get_tasks() -> Any:
        try:
            return store.read_tasks()
        except StoreError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.put("/tasks", response_model=OkResponse, responses=_BAD_DOCUMENT)
    async def put_tasks(request: Request) -> OkResponse:
        payload = await _read_json_body(request, settings.max_body_bytes)
        try:
            branches = ensure_valid_document(payload)
        except DocumentValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            store.write_tasks(payload)
        except OSError as exc:
            raise HTTPException(status_code=500, detail=f"cannot write {store.tasks_file.name}: {exc}") from exc
        logger.info(
            "saved %s: %d branches, %d stories",
            store.tasks_file,
            len(branches),
            sum(len(branch.stories) for branch in branches),
        )
        return OkResponse()

    @app.get("/progress", response_class=PlainTextResponse, responses=_SERVER_ERROR)
    def get_progress() -> str:
        try:
            return store.read_progress()
        except StoreError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.get("/runner/status", response_model=RunnerStatus)
    async def runner_status() -> RunnerStatus:
        return supervisor.status()

    @app.post("/runner/start", response_model=OkResponse, responses=_CONFLICT)
    async def runner_start(payload: RunnerStartRequest) -> OkResponse:
        try:
            await supervisor.start(payload.command, payload.args, payload.cwd)
        except (AlreadyRunningError, InvalidCommandError) as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return OkResponse()

    @app.post("/runner/stop", response_model=OkResponse, responses=_CONFLICT)
    async def runner_stop() -> OkResponse:
        try:
            await supervisor.stop()
        except NotRunningError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return OkResponse()

    @app.get("/runner/logs")
    async def runner_logs() -> StreamingResponse:
        subscription = supervisor.subscribe()

        async def event_stream() -> AsyncIterator[str]:
            try:
                async for chunk in subscription.stream(settings.stream_keepalive_seconds):
                    yield chunk
            finally:
                supervisor.unsubscribe(subscription)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app


async def _read_json_body(request: Request, limit: int) -> Any:
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise HTTPException(status_code=413, detail=f"request body exceeds {limit} bytes")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise HTTPException(status_code=413, detail=f"request body exceeds {limit} bytes")
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=400, detail="request body must be valid JSON") from exc


def _describe_request_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


app = create_app()
