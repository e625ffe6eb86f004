"""Access log middleware.

Emits one structlog line per HTTP request. The level follows the outcome:

* status >= 500: error, always with the ``details`` field and a dump of the
  raw request under ``request``;
* 4xx: warning, or error when the request recorded errors;
* anything else: info, or error when the request recorded errors.

Errors recorded on the request context (``reqlog.context.record_error``) are
attached as ``context_errors`` whatever the level.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from datetime import datetime
from time import perf_counter
from typing import Any, Callable, Iterable, Mapping, Optional

import structlog
from starlette.requests import Request

from reqlog.config import Settings
from reqlog.context import DEFAULT_LOGGER_NAME, RequestContext, get_request_context
from reqlog.errors import BodyReadError
from reqlog.middleware.body import BufferedBody, ObservedRequest
from reqlog.middleware.trace import (
    TRACE_ID_KEY,
    TraceIDFunc,
    default_trace_id_func,
    new_trace_id,
    publish_trace_id,
    resolve_trace_id,
)
from reqlog.middleware.writer import BodyCapturingWriter, ResponseWriter
from reqlog.models import LogRecord, snapshot_keys

Formatter = Callable[[LogRecord], str]


def short_handler_name(name: str) -> str:
    return ".".join(name.split(".")[-2:])


def default_formatter(record: LogRecord) -> str:
    timestamp = ""
    if record.timestamp:
        # Fraction without trailing zeros, no dot on a whole second.
        fraction = f"{record.timestamp.microsecond:06d}".rstrip("0")
        timestamp = record.timestamp.strftime("%Y-%m-%d %H:%M:%S") + (f".{fraction}" if fraction else "")
    return (
        f"{timestamp}|{record.client_ip}|{record.method}|{record.host}{record.request_uri}|"
        f"{short_handler_name(record.handler_name)}|{record.status_code}|{record.latency:f}"
    )


@dataclass(frozen=True)
class AccessLogConfig:
    formatter: Formatter = default_formatter
    skip_paths: frozenset[str] = field(default_factory=frozenset)
    disable_details: bool = False
    # Only used when details are enabled.
    details_with_context_keys: bool = False
    # Reads both bodies into memory; meant for debugging.
    details_with_body: bool = False
    trace_id_func: Optional[TraceIDFunc] = None
    trace_id_key: str = TRACE_ID_KEY
    logger_name: str = DEFAULT_LOGGER_NAME

    def __post_init__(self) -> None:
        object.__setattr__(self, "skip_paths", frozenset(self.skip_paths))
        if self.trace_id_func is None:
            object.__setattr__(
                self,
                "trace_id_func",
                functools.partial(default_trace_id_func, key=self.trace_id_key),
            )

    @property
    def capture_body(self) -> bool:
        return self.details_with_body and not self.disable_details

    @property
    def capture_context_keys(self) -> bool:
        return self.details_with_context_keys and not self.disable_details

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "AccessLogConfig":
        values: dict[str, Any] = {
            "skip_paths": settings.skip_paths,
            "disable_details": settings.access_log_disable_details,
            "details_with_context_keys": settings.access_log_details_with_context_keys,
            "details_with_body": settings.access_log_details_with_body,
            "trace_id_key": settings.trace_id_key,
            "logger_name": settings.logger_name,
        }
        values.update(overrides)
        return cls(**values)


def classify_severity(status_code: int, has_errors: bool) -> str:
    if status_code >= 500:
        return "error"
    if status_code >= 400:
        return "error" if has_errors else "warning"
    return "error" if has_errors else "info"


def _header(headers: Iterable[tuple[bytes, bytes]], name: bytes) -> str:
    for key, value in headers:
        if key.lower() == name:
            return value.decode("latin-1")
    return ""


def request_uri(scope: dict[str, Any]) -> str:
    raw_path = scope.get("raw_path")
    # Some servers leave the query string on raw_path.
    path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else scope.get("path", "")
    query = scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else ""


def content_length(request: Request) -> int:
    value = request.headers.get("content-length")
    if value is not None:
        try:
            return int(value)
        except ValueError:
            return -1
    if "chunked" in request.headers.get("transfer-encoding", "").lower():
        return -1
    return 0


def handler_name(scope: dict[str, Any]) -> str:
    endpoint = scope.get("endpoint")
    if endpoint is None:
        return ""
    module = getattr(endpoint, "__module__", None) or ""
    name = getattr(endpoint, "__qualname__", None) or type(endpoint).__qualname__
    return f"{module}.{name}" if module else name


def dump_request(scope: dict[str, Any], body: Optional[bytes]) -> str:
    """Render the inbound request in HTTP/1.x wire format."""

    headers = scope.get("headers", [])
    lines = [f"{scope.get('method', '')} {request_uri(scope)} HTTP/{scope.get('http_version', '1.1')}"]
    host = _header(headers, b"host")
    if host:
        lines.append(f"Host: {host}")
    for key, value in headers:
        if key.lower() == b"host":
            continue
        lines.append(f"{key.decode('latin-1')}: {value.decode('latin-1')}")
    head = "\r\n".join(lines) + "\r\n\r\n"
    return head + (body or b"").decode("utf-8", errors="replace")


def entry_record(request: Request) -> LogRecord:
    scope = request.scope
    remote = f"{request.client.host}:{request.client.port}" if request.client else ""
    return LogRecord(
        method=request.method,
        path=scope.get("path", ""),
        query=scope.get("query_string", b"").decode("latin-1"),
        proto=f"HTTP/{scope.get('http_version', '1.1')}",
        content_length=content_length(request),
        host=request.headers.get("host", ""),
        remote_addr=remote,
        request_uri=request_uri(scope),
        referer=request.headers.get("referer", ""),
        user_agent=request.headers.get("user-agent", ""),
        client_ip=client_ip(request),
        content_type=request.headers.get("content-type", "").split(";", 1)[0].strip(),
    )


class AccessLogMiddleware:
    """Structured access logging for every HTTP request."""

    def __init__(self, app: Callable[..., Any], config: Optional[AccessLogConfig] = None) -> None:
        self.app = app
        self.config = config or AccessLogConfig()

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        conf = self.config
        ctx = get_request_context(scope)
        ctx.logger_name = conf.logger_name

        writer_cls = BodyCapturingWriter if conf.capture_body else ResponseWriter
        writer = writer_cls(send)
        ctx.writer = writer

        body = BufferedBody(receive)
        request = ObservedRequest(scope, body)
        tokens: Mapping[str, Any] = {}
        try:
            try:
                trace_id = await resolve_trace_id(request, conf.trace_id_func, conf.trace_id_key)
            except Exception as exc:  # noqa: BLE001 - a broken trace_id_func must not fail the request
                ctx.errors.append(exc)
                trace_id = new_trace_id()
            try:
                tokens = publish_trace_id(request, trace_id, conf.trace_id_key)
            except Exception as exc:  # noqa: BLE001 - log the request without an id
                ctx.errors.append(exc)

            try:
                record = entry_record(request)
            except Exception as exc:  # noqa: BLE001 - keep whatever the scope gives directly
                ctx.errors.append(exc)
                record = LogRecord(method=scope.get("method", ""), path=scope.get("path", ""))
            start = perf_counter()

            if conf.capture_body:
                try:
                    raw = await body.read()
                    if raw:
                        record = record.model_copy(update={"request_body": raw.decode("utf-8", errors="replace")})
                except Exception as exc:  # noqa: BLE001 - recorded, the request goes on
                    error = BodyReadError()
                    error.__cause__ = exc
                    ctx.errors.append(error)

            failure: Optional[Exception] = None
            try:
                await self.app(scope, body.receive, writer.send)
            except Exception as exc:
                if ctx.recover is None:
                    failure = exc
                    if not writer.started:
                        writer.status = 500
                else:
                    await ctx.recover(exc)

            self._log(request, record, start, ctx, writer, body)
            if failure is not None:
                raise failure
        finally:
            structlog.contextvars.reset_contextvars(**tokens)

    def _log(
        self,
        request: Request,
        record: LogRecord,
        start: float,
        ctx: RequestContext,
        writer: ResponseWriter,
        body: BufferedBody,
    ) -> None:
        conf = self.config
        if record.path in conf.skip_paths:
            return

        try:
            latency = perf_counter() - start
            update: dict[str, Any] = {
                "handler_name": handler_name(request.scope),
                "status_code": writer.status,
                "body_size": writer.size,
                "timestamp": datetime.now().astimezone(),
                "latency": latency,
            }
            if conf.capture_context_keys and ctx.keys:
                update["context_keys"] = snapshot_keys(ctx.keys)
            if isinstance(writer, BodyCapturingWriter) and writer.body:
                update["response_body"] = bytes(writer.body).decode("utf-8", errors="replace")
            record = record.model_copy(update=update)

            fields: dict[str, Any] = {}
            if ctx.errors:
                fields["context_errors"] = str(ctx.errors)
            access_logger = ctx.child_logger("access", **fields)
            details_logger = ctx.child_logger("access.details", details=record.to_details(), **fields)
            logger = access_logger if conf.disable_details else details_logger

            level = classify_severity(record.status_code, bool(ctx.errors))
            if record.status_code >= 500:
                logger = details_logger.bind(request=dump_request(request.scope, body.value))

            getattr(logger, level)(conf.formatter(record))
        except Exception:  # noqa: BLE001 - logging must never break the response
            structlog.get_logger(f"{conf.logger_name}.access").exception(
                "access_log_failed",
                path=record.path,
            )
