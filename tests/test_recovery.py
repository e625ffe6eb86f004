from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.routing import Route
from structlog.testing import capture_logs

from conftest import access_lines
from reqlog import TRACE_ID_KEY
from reqlog.context import get_request_context
from reqlog.errors import RecoveredError
from reqlog.middleware.recovery import RecoveryMiddleware, classify_failure, is_broken_pipe


async def test_panic_becomes_500_and_server_keeps_serving(api_client) -> None:
    with capture_logs() as logs:
        resp = await api_client.get("/boom")
        after = await api_client.get("/health")

    assert resp.status_code == 500
    assert resp.headers[TRACE_ID_KEY]
    assert after.status_code == 200

    boom_line, health_line = access_lines(logs)
    assert boom_line["log_level"] == "error"
    assert boom_line["details"]["status_code"] == 500
    assert boom_line["context_errors"].startswith("Error #01: Recovery from panic: RuntimeError('boom')")
    assert "Traceback" in boom_line["context_errors"]
    assert boom_line["context_errors"].count("Error #") == 1
    assert health_line["log_level"] == "info"


async def test_broken_pipe_is_recorded_and_still_answers_500(api_client) -> None:
    with capture_logs() as logs:
        resp = await api_client.get("/pipe")
    assert resp.status_code == 500
    (line,) = access_lines(logs)
    assert line["context_errors"].startswith("Error #01: Broken pipe:")


async def test_wrapped_connection_reset_counts_as_broken_pipe(api_client) -> None:
    with capture_logs() as logs:
        resp = await api_client.get("/reset")
    assert resp.status_code == 500
    (line,) = access_lines(logs)
    assert line["context_errors"].startswith("Error #01: Broken pipe:")


async def test_error_handler_response_is_sent_with_500(make_client) -> None:
    seen: list[str] = []

    def handler(request: Request) -> JSONResponse:
        seen.append(request.url.path)
        ctx = get_request_context(request)
        assert isinstance(ctx.errors[-1], RecoveredError)
        return JSONResponse({"detail": "internal error", "trace_id": ctx.trace_id}, status_code=200)

    async with make_client(error_handler=handler) as client:
        resp = await client.get("/boom")

    assert seen == ["/boom"]
    assert resp.status_code == 500
    assert resp.json() == {"detail": "internal error", "trace_id": resp.headers[TRACE_ID_KEY]}


async def test_async_error_handler_without_response(make_client) -> None:
    calls: list[int] = []

    async def handler(request: Request) -> None:
        calls.append(len(get_request_context(request).errors))

    async with make_client(error_handler=handler) as client:
        resp = await client.get("/boom")
    assert resp.status_code == 500
    assert resp.content == b""
    assert calls == [1]


async def test_failing_error_handler_does_not_escape(make_client) -> None:
    def handler(request: Request) -> None:
        raise ValueError("handler broke")

    async with make_client(error_handler=handler) as client:
        with capture_logs() as logs:
            resp = await client.get("/boom")
    assert resp.status_code == 500
    (line,) = access_lines(logs)
    assert "Error #02: handler broke" in line["context_errors"]


async def test_recovery_on_its_own(make_client) -> None:
    recorded: list[Any] = []

    async def boom(request: Request) -> None:
        raise KeyError("missing")

    def handler(request: Request) -> None:
        recorded.extend(get_request_context(request).errors)

    app = Starlette(routes=[Route("/", boom)])
    app.add_middleware(RecoveryMiddleware, error_handler=handler)

    async with make_client(app=app) as client:
        first = await client.get("/")
        second = await client.get("/")

    assert first.status_code == 500
    assert second.status_code == 500
    assert len(recorded) == 2
    assert all(err.kind == "panic" for err in recorded)
    assert isinstance(recorded[0].original, KeyError)


def test_is_broken_pipe() -> None:
    assert is_broken_pipe(BrokenPipeError(32, "Broken pipe"))
    assert is_broken_pipe(ConnectionResetError(104, "Connection reset by peer"))
    assert is_broken_pipe(OSError("write: CONNECTION RESET BY PEER"))
    assert not is_broken_pipe(OSError("No space left on device"))
    assert not is_broken_pipe(RuntimeError("broken pipe"))


def test_classify_failure_follows_cause_chain() -> None:
    try:
        try:
            raise BrokenPipeError(32, "Broken pipe")
        except BrokenPipeError as exc:
            raise RuntimeError("send failed") from exc
    except RuntimeError as wrapped:
        assert classify_failure(wrapped) == "broken_pipe"
    assert classify_failure(ValueError("nope")) == "panic"
