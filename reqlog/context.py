"""Request-scoped context shared by the interceptors and handler code.

One ``RequestContext`` lives in ``scope["state"]`` for the lifetime of an
HTTP request, so it is also reachable from handlers as
``request.state.request_context``. It holds named slots for the things the
interceptors exchange (logger, trace id, recorded errors, active response
writer, failure boundary) and one opaque ``keys`` mapping that handlers may
fill for the optional details snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, MutableMapping, Optional, Union

import structlog
from starlette.requests import HTTPConnection

if TYPE_CHECKING:
    from reqlog.middleware.writer import ResponseWriter


STATE_KEY = "request_context"
DEFAULT_LOGGER_NAME = "reqlog"

Scope = MutableMapping[str, Any]
ScopeOrConnection = Union[Scope, HTTPConnection]
FailureBoundary = Callable[[Exception], Awaitable[None]]


class ErrorList(list):
    """Ordered errors recorded while handling one request."""

    def messages(self) -> list[str]:
        return [str(err) for err in self]

    def __str__(self) -> str:
        return "".join(f"Error #{i:02d}: {msg}\n" for i, msg in enumerate(self.messages(), start=1))


@dataclass
class RequestContext:
    logger_name: str = DEFAULT_LOGGER_NAME
    logger: Any = None
    trace_id: str = ""
    errors: ErrorList = field(default_factory=ErrorList)
    keys: dict[str, Any] = field(default_factory=dict)
    writer: Optional["ResponseWriter"] = None
    recover: Optional[FailureBoundary] = None
    aborted: bool = False

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = structlog.get_logger(self.logger_name)

    def child_logger(self, name: str, **values: Any) -> Any:
        """A logger named ``<logger_name>.<name>`` carrying the trace id."""
        if self.trace_id:
            values.setdefault("trace_id", self.trace_id)
        return structlog.get_logger(f"{self.logger_name}.{name}").bind(**values)


def _scope(obj: ScopeOrConnection) -> Scope:
    if isinstance(obj, HTTPConnection):
        return obj.scope
    return obj


def get_request_context(obj: ScopeOrConnection) -> RequestContext:
    """Return the request's context, creating it on first access."""

    state = _scope(obj).setdefault("state", {})
    ctx = state.get(STATE_KEY)
    if ctx is None:
        ctx = RequestContext()
        state[STATE_KEY] = ctx
    return ctx


def record_error(obj: ScopeOrConnection, error: BaseException) -> None:
    """Attach an error to the request; it is reported by the access log."""

    get_request_context(obj).errors.append(error)


def set_context_key(obj: ScopeOrConnection, key: str, value: Any) -> None:
    get_request_context(obj).keys[key] = value


def get_trace_id(obj: ScopeOrConnection) -> str:
    return get_request_context(obj).trace_id


def get_logger(obj: ScopeOrConnection) -> Any:
    return get_request_context(obj).logger
