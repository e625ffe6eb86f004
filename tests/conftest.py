from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import pytest
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from httpx import ASGITransport, AsyncClient

from reqlog import TRACE_ID_KEY, get_trace_id, install, record_error, set_context_key
from reqlog.config import get_settings
from reqlog.middleware.access_log import AccessLogConfig
from reqlog.middleware.recovery import ErrorHandler


class _Opaque:
    def __repr__(self) -> str:
        return "<opaque>"


def build_app(config: AccessLogConfig | None = None, error_handler: ErrorHandler | None = None) -> FastAPI:
    app = FastAPI()

    @app.get("/hello")
    async def hello(request: Request) -> str:
        record_error(request, ValueError("test1"))
        record_error(request, ValueError("test2"))
        return "world"

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/status/{code}")
    async def status(code: int, request: Request) -> Response:
        if request.query_params.get("error"):
            record_error(request, RuntimeError("upstream unavailable"))
        return PlainTextResponse("status", status_code=code)

    @app.post("/echo")
    async def echo(request: Request) -> Response:
        body = await request.body()
        return PlainTextResponse(body.decode("utf-8"))

    @app.post("/form")
    async def form(request: Request) -> dict[str, Any]:
        data = await request.form()
        return {k: v for k, v in data.items() if isinstance(v, str)}

    @app.api_route("/trace", methods=["GET", "POST"])
    async def trace(request: Request) -> dict[str, Any]:
        return {"header": request.headers.get(TRACE_ID_KEY), "context": get_trace_id(request)}

    @app.get("/keys")
    async def keys(request: Request) -> dict[str, str]:
        set_context_key(request, "user", "u-1")
        set_context_key(request, "opaque", _Opaque())
        return {"ok": "yes"}

    @app.get("/boom")
    async def boom() -> None:
        raise RuntimeError("boom")

    @app.get("/pipe")
    async def pipe() -> None:
        raise BrokenPipeError(32, "Broken pipe")

    @app.get("/reset")
    async def reset() -> None:
        try:
            raise OSError(104, "Connection reset by peer")
        except OSError as exc:
            raise RuntimeError("write to client failed") from exc

    @app.get("/empty")
    async def empty() -> Response:
        return Response(status_code=204)

    @app.get("/json-error")
    async def json_error() -> JSONResponse:
        return JSONResponse({"error": "bad"}, status_code=500)

    install(app, config=config, error_handler=error_handler)
    return app


@pytest.fixture(autouse=True)
def test_environment() -> None:
    get_settings.cache_clear()
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
    get_settings.cache_clear()


@pytest.fixture
def make_client() -> Callable[..., Any]:
    @asynccontextmanager
    async def _make(
        config: AccessLogConfig | None = None,
        error_handler: ErrorHandler | None = None,
        app: Any = None,
    ) -> AsyncIterator[AsyncClient]:
        transport = ASGITransport(app=app or build_app(config=config, error_handler=error_handler))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client

    return _make


@pytest.fixture
async def api_client(make_client) -> AsyncIterator[AsyncClient]:
    async with make_client() as client:
        yield client


def access_lines(logs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # capture_logs drops logger names; access lines are the ones rendered by the formatter.
    return [entry for entry in logs if "|" in str(entry.get("event", ""))]
