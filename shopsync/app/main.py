import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .agent import SyncAgent
from .config import settings
from .db import LocalStoreError
from .jsonlog import json_log
from .routers.pos import router as pos_router
from .routers.sync import router as sync_router

STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_content(detail: str, exc: Exception) -> dict:
    content = {"detail": detail}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return content


def create_app(agent: Optional[SyncAgent] = None, *, connect: Optional[bool] = None) -> FastAPI:
    auto_connect = settings.auto_connect if connect is None else connect

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        a = agent or SyncAgent(settings)
        app.state.agent = a
        await a.start()
        connect_task = asyncio.create_task(a.watcher.handle_online()) if auto_connect else None
        try:
            yield
        finally:
            if connect_task is not None and not connect_task.done():
                connect_task.cancel()
            await a.close()
            json_log("info", "agent.stopped", client_id=a.client_id)

    app = FastAPI(title="shopsync local API", version=settings.api_version, lifespan=lifespan)

    # The local database refusing a write is "unable to save" for the user, not a client error.
    @app.exception_handler(LocalStoreError)
    def _local_store_error(_req: Request, exc: Exception):
        return JSONResponse(status_code=503, content=_error_content("unable to save", exc))

    @app.exception_handler(LookupError)
    def _not_found(_req: Request, exc: Exception):
        return JSONResponse(status_code=404, content={"detail": str(exc) or "not found"})

    @app.exception_handler(RequestValidationError)
    def _request_validation_error(_req: Request, exc: Exception):
        content = {"detail": "validation failed"}
        if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
            content["errors"] = exc.errors()
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(ValidationError)
    def _payload_validation_error(_req: Request, exc: Exception):
        return JSONResponse(status_code=400, content=_error_content("invalid payload", exc))

    @app.exception_handler(ValueError)
    def _value_error(_req: Request, exc: Exception):
        return JSONResponse(status_code=400, content={"detail": str(exc) or "invalid request"})

    @app.exception_handler(Exception)
    def _unhandled_exception(req: Request, exc: Exception):
        rid = _current_request_id(req)
        json_log(
            "error",
            "http.request.unhandled",
            request_id=rid,
            method=req.method,
            path=req.url.path,
            error=str(exc),
        )
        content = {"detail": "internal error", "request_id": rid}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    # Correlation id + basic structured request logging.
    @app.middleware("http")
    async def _request_logging(request: Request, call_next):
        rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
        request.state.request_id = rid
        started = time.time()
        path = request.url.path
        method = request.method
        try:
            response = await call_next(request)
        except Exception as exc:
            json_log(
                "error",
                "http.request.error",
                request_id=rid,
                method=method,
                path=path,
                duration_ms=int((time.time() - started) * 1000),
                error=str(exc),
            )
            raise
        response.headers["X-Request-Id"] = rid
        if path != "/health":
            json_log(
                "info",
                "http.request",
                request_id=rid,
                method=method,
                path=path,
                status_code=response.status_code,
                duration_ms=int((time.time() - started) * 1000),
            )
        return response

    # POS UI runs from its own dev server during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(pos_router)
    app.include_router(sync_router)

    @app.get("/health")
    async def health(request: Request):
        a: Optional[SyncAgent] = getattr(request.app.state, "agent", None)
        out = {
            "status": "ok",
            "env": settings.env,
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "uptime_s": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        }
        if a is not None:
            out["connectivity"] = a.watcher.state
            out["sync_state"] = a.sync.state
        return out

    return app
