from __future__ import annotations

import inspect
import traceback
from typing import Any, Awaitable, Callable, Optional, Union

from starlette.requests import Request
from starlette.responses import Response

from reqlog.context import get_request_context
from reqlog.errors import FailureKind, RecoveredError
from reqlog.middleware.writer import ResponseWriter

ErrorHandler = Callable[[Request], Union[Optional[Response], Awaitable[Optional[Response]]]]

_BROKEN_PIPE_MARKERS = ("broken pipe", "connection reset by peer")


def is_broken_pipe(exc: BaseException) -> bool:
    """True when ``exc`` (or what it wraps) is a severed client connection."""

    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (BrokenPipeError, ConnectionResetError)):
            return True
        if isinstance(current, OSError):
            message = str(current).lower()
            if any(marker in message for marker in _BROKEN_PIPE_MARKERS):
                return True
        current = current.__cause__ or current.__context__
    return False


def classify_failure(exc: BaseException) -> FailureKind:
    return "broken_pipe" if is_broken_pipe(exc) else "panic"


class RecoveryMiddleware:
    """Turns unhandled exceptions from the wrapped app into a 500 response.

    The exception is recorded on the request context so the access log
    reports it, then ``error_handler`` (if any) is called with the request.
    Add it last so it wraps every other middleware.
    """

    def __init__(self, app: Callable[..., Any], error_handler: Optional[ErrorHandler] = None) -> None:
        self.app = app
        self.error_handler = error_handler

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        ctx = get_request_context(scope)
        writer = ResponseWriter(send)
        ctx.writer = writer
        request = Request(scope, receive)

        async def recover(exc: Exception) -> None:
            await self.recover(request, exc)

        ctx.recover = recover
        try:
            await self.app(scope, receive, writer.send)
        except Exception as exc:
            await self.recover(request, exc)

    async def recover(self, request: Request, exc: Exception) -> None:
        ctx = get_request_context(request)
        if any(isinstance(err, RecoveredError) and err.original is exc for err in ctx.errors):
            return

        kind = classify_failure(exc)
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        ctx.errors.append(RecoveredError(kind, exc, stack))

        response: Optional[Response] = None
        if self.error_handler is not None:
            try:
                result = self.error_handler(request)
                response = await result if inspect.isawaitable(result) else result
            except Exception as handler_exc:  # noqa: BLE001 - keep serving
                ctx.errors.append(handler_exc)
                ctx.child_logger("recovery").exception("error_handler_failed")

        ctx.aborted = True
        writer = ctx.writer
        if writer is None or writer.started:
            return
        try:
            if response is None:
                await writer.abort_with_status(500)
            else:
                response.status_code = 500
                await response(request.scope, request.receive, writer.send)
        except Exception:  # noqa: BLE001 - the client is most likely gone
            ctx.child_logger("recovery").warning("recovery_response_failed", exc_info=True)
