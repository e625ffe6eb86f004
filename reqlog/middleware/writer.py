from __future__ import annotations

from typing import Any, Awaitable, Callable, MutableMapping

from starlette.datastructures import MutableHeaders

Message = MutableMapping[str, Any]
Send = Callable[[Message], Awaitable[None]]


class ResponseWriter:
    """Wraps ASGI ``send`` and keeps track of what was written.

    ``headers`` are added to the response when it starts, which lets
    interceptors set outbound headers before the app has produced a response.
    """

    def __init__(self, send: Send) -> None:
        self._send = send
        self.headers: dict[str, str] = {}
        self.status: int = 200
        self.size: int = 0
        self.started: bool = False

    async def send(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.started = True
            self.status = int(message.get("status", 200))
            if self.headers:
                message.setdefault("headers", [])
                headers = MutableHeaders(scope=message)
                for name, value in self.headers.items():
                    headers[name] = value
        elif message["type"] == "http.response.body":
            self.size += len(message.get("body", b""))

        await self._send(message)

    async def abort_with_status(self, status: int) -> bool:
        """Send an empty response with ``status``.

        Returns False when a response already started and the status can no
        longer be changed.
        """

        if self.started:
            return False
        await self.send({"type": "http.response.start", "status": status, "headers": []})
        await self.send({"type": "http.response.body", "body": b"", "more_body": False})
        return True


class BodyCapturingWriter(ResponseWriter):
    """ResponseWriter that also keeps a copy of every body chunk."""

    def __init__(self, send: Send) -> None:
        super().__init__(send)
        self.body = bytearray()

    async def send(self, message: Message) -> None:
        if message["type"] == "http.response.body":
            self.body.extend(message.get("body", b""))
        await super().send(message)
