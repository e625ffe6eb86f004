"""Access logging and panic recovery for Starlette / FastAPI apps."""

from __future__ import annotations

from typing import Optional

from starlette.applications import Starlette

from reqlog.context import get_logger, get_request_context, get_trace_id, record_error, set_context_key
from reqlog.middleware.access_log import AccessLogConfig, AccessLogMiddleware, default_formatter
from reqlog.middleware.recovery import ErrorHandler, RecoveryMiddleware
from reqlog.middleware.trace import TRACE_ID_KEY, TraceIDMiddleware
from reqlog.models import LogRecord

__all__ = [
    "TRACE_ID_KEY",
    "AccessLogConfig",
    "AccessLogMiddleware",
    "LogRecord",
    "RecoveryMiddleware",
    "TraceIDMiddleware",
    "default_formatter",
    "get_logger",
    "get_request_context",
    "get_trace_id",
    "install",
    "record_error",
    "set_context_key",
]


def install(
    app: Starlette,
    config: Optional[AccessLogConfig] = None,
    error_handler: Optional[ErrorHandler] = None,
) -> None:
    """Wrap ``app`` as RecoveryMiddleware -> AccessLogMiddleware -> routes."""

    app.add_middleware(AccessLogMiddleware, config=config or AccessLogConfig())
    app.add_middleware(RecoveryMiddleware, error_handler=error_handler)
