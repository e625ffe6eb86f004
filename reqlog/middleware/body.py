from __future__ import annotations

from typing import Any, AsyncGenerator, Awaitable, Callable, MutableMapping, Optional

from starlette.requests import ClientDisconnect, Request

Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]


class BufferedBody:
    """Single-read request body that can be handed on downstream.

    Until ``read()`` is called, ``receive`` is a plain pass-through. Once the
    body has been read, the next ``receive()`` replays it as one message and
    later calls go back to the server (e.g. to wait for ``http.disconnect``).
    """

    def __init__(self, receive: Receive) -> None:
        self._receive = receive
        self._body: Optional[bytes] = None
        self._error: Optional[Exception] = None
        self._replayed = False

    @property
    def consumed(self) -> bool:
        return self._body is not None

    @property
    def value(self) -> Optional[bytes]:
        return self._body

    async def read(self) -> bytes:
        if self._error is not None:
            raise self._error
        if self._body is None:
            chunks: list[bytes] = []
            try:
                while True:
                    message = await self._receive()
                    if message["type"] == "http.disconnect":
                        raise ClientDisconnect()
                    chunks.append(message.get("body", b""))
                    if not message.get("more_body", False):
                        break
            except Exception as exc:
                self._error = exc
                raise
            self._body = b"".join(chunks)
        return self._body

    async def receive(self) -> Message:
        if self._body is not None and not self._replayed:
            self._replayed = True
            return {"type": "http.request", "body": self._body, "more_body": False}
        return await self._receive()


class ObservedRequest(Request):
    """Request whose body is read through a ``BufferedBody``.

    ``body()``, ``json()`` and ``form()`` all go through ``stream()``, so
    reading them here leaves the bytes available to the downstream app.
    """

    def __init__(self, scope: MutableMapping[str, Any], buffer: BufferedBody) -> None:
        super().__init__(scope, buffer.receive)
        self.buffer = buffer

    async def stream(self) -> AsyncGenerator[bytes, None]:
        yield await self.buffer.read()
        yield b""
