from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic_core import to_jsonable_python


class LogRecord(BaseModel):
    """One access-log entry.

    Request-derived fields are set when the request enters the access logger;
    ``status_code``, ``body_size``, ``timestamp`` and ``latency`` (seconds) are
    set once the downstream app has finished.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime | None = None
    method: str = ""
    path: str = ""
    query: str = ""
    proto: str = ""
    content_length: int = 0
    host: str = ""
    remote_addr: str = ""
    request_uri: str = ""
    referer: str = ""
    user_agent: str = ""
    client_ip: str = ""
    content_type: str = ""
    handler_name: str = ""
    status_code: int = 0
    body_size: int = 0
    latency: float = 0.0
    context_keys: dict[str, Any] | None = None
    request_body: str | None = None
    response_body: str | None = None

    def to_details(self) -> dict[str, Any]:
        """JSON-ready mapping; optional fields that were not captured are left out."""

        return self.model_dump(mode="json", exclude_none=True)


def snapshot_keys(keys: dict[str, Any]) -> dict[str, Any]:
    # Values handlers stash in the context may be arbitrary objects.
    return {str(k): to_jsonable_python(v, fallback=repr) for k, v in keys.items()}
