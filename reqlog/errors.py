from __future__ import annotations

from typing import Literal

FailureKind = Literal["broken_pipe", "panic"]


class ReqlogError(Exception):
    """Base class for errors recorded by the request-observability layer."""


class BodyReadError(ReqlogError):
    """The request body could not be read in full.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, message: str = "failed to read request body") -> None:
        super().__init__(message)


class RecoveredError(ReqlogError):
    """An unhandled exception caught at the failure boundary."""

    PREFIXES: dict[str, str] = {
        "broken_pipe": "Broken pipe:",
        "panic": "Recovery from panic:",
    }

    def __init__(self, kind: FailureKind, original: BaseException, stack: str) -> None:
        self.kind = kind
        self.original = original
        self.stack = stack
        super().__init__(f"{self.PREFIXES[kind]} {original!r}\n{stack}")
