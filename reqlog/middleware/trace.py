from __future__ import annotations

import inspect
import string
import uuid
from typing import Any, Awaitable, Callable, Mapping, Union
from urllib.parse import quote

import structlog
from starlette.datastructures import MutableHeaders
from starlette.requests import Request

from reqlog.context import get_request_context
from reqlog.middleware.body import BufferedBody, ObservedRequest
from reqlog.middleware.writer import ResponseWriter

TRACE_ID_KEY = "trace_id"

TraceIDFunc = Callable[[Request], Union[str, Awaitable[str]]]

_FORM_CONTENT_TYPES = {"application/x-www-form-urlencoded", "multipart/form-data"}

# Printable ASCII other than "%" passes through; everything else is percent-encoded.
_HEADER_SAFE = "".join(c for c in string.printable if c not in "%\t\n\r\x0b\x0c")


def new_trace_id() -> str:
    return uuid.uuid4().hex


def header_safe(trace_id: str) -> str:
    """Percent-encode ``trace_id`` if it cannot travel in an HTTP header as is."""

    if all(" " <= c <= "~" for c in trace_id):
        return trace_id
    return quote(trace_id, safe=_HEADER_SAFE)


def trace_id_from_header(request: Request, key: str = TRACE_ID_KEY) -> str:
    return request.headers.get(key, "")


def trace_id_from_query(request: Request, key: str = TRACE_ID_KEY) -> str:
    return request.query_params.get(key, "")


async def trace_id_from_form(request: Request, key: str = TRACE_ID_KEY) -> str:
    content_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    if content_type not in _FORM_CONTENT_TYPES:
        return ""
    try:
        async with request.form() as form:
            value = form.get(key)
    except Exception:  # noqa: BLE001 - an unreadable form is just a miss
        return ""
    return value if isinstance(value, str) else ""


def trace_id_from_context(request: Request) -> str:
    """Trace id already known for this request, else a new one."""

    ctx = get_request_context(request)
    if ctx.trace_id:
        return ctx.trace_id
    bound = structlog.contextvars.get_contextvars().get("trace_id")
    if isinstance(bound, str) and bound:
        return bound
    return new_trace_id()


async def default_trace_id_func(request: Request, key: str = TRACE_ID_KEY) -> str:
    """Header, then form field, then query parameter, then context."""

    return (
        trace_id_from_header(request, key)
        or await trace_id_from_form(request, key)
        or trace_id_from_query(request, key)
        or trace_id_from_context(request)
    )


async def resolve_trace_id(request: Request, trace_id_func: TraceIDFunc | None = None, key: str = TRACE_ID_KEY) -> str:
    if trace_id_func is None:
        trace_id = await default_trace_id_func(request, key)
    else:
        trace_id = trace_id_func(request)
        if inspect.isawaitable(trace_id):
            trace_id = await trace_id
    return trace_id or new_trace_id()


def publish_trace_id(request: Request, trace_id: str, key: str = TRACE_ID_KEY) -> Mapping[str, Any]:
    """Make ``trace_id`` visible to downstream handlers, the client and logs.

    Values that are not header-safe (non-ASCII form or query input) are
    percent-encoded first. Returns the structlog contextvar tokens; pass them to
    ``structlog.contextvars.reset_contextvars`` when the request is done.
    """

    trace_id = header_safe(trace_id)
    MutableHeaders(scope=request.scope)[key] = trace_id

    ctx = get_request_context(request)
    ctx.trace_id = trace_id
    ctx.logger = structlog.get_logger(ctx.logger_name).bind(trace_id=trace_id)
    if ctx.writer is not None:
        ctx.writer.headers[key] = trace_id

    return structlog.contextvars.bind_contextvars(trace_id=trace_id)


class TraceIDMiddleware:
    """Resolves and publishes a trace id for every HTTP request."""

    def __init__(
        self,
        app: Callable[..., Any],
        trace_id_func: TraceIDFunc | None = None,
        key: str = TRACE_ID_KEY,
    ) -> None:
        self.app = app
        self.trace_id_func = trace_id_func
        self.key = key

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        ctx = get_request_context(scope)
        if ctx.writer is None:
            ctx.writer = ResponseWriter(send)
            send = ctx.writer.send

        body = BufferedBody(receive)
        request = ObservedRequest(scope, body)
        tokens: Mapping[str, Any] = {}
        try:
            try:
                trace_id = await resolve_trace_id(request, self.trace_id_func, self.key)
                tokens = publish_trace_id(request, trace_id, self.key)
            except Exception as exc:  # noqa: BLE001 - serve the request without an id
                ctx.errors.append(exc)
                ctx.child_logger("trace").warning("trace_id_unavailable", exc_info=True)
            await self.app(scope, body.receive, send)
        finally:
            structlog.contextvars.reset_contextvars(**tokens)
