import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Tuple

from starlette.types import Receive, Scope

from payproxy.proxy.headers import get_header

# Queue entry telling the body reader that the client went away
_DISCONNECTED = object()


class ClientDisconnected(Exception):
    """The inbound client went away before the exchange finished."""


class InboundChannel:
    """
    Single reader of the ASGI ``receive`` callable for one request.

    Once started, a pump task owns ``receive`` for the rest of the exchange.
    Body chunks go through a one-slot queue, so the client is only read as
    fast as the upstream accepts the body. ``http.disconnect`` is noticed in
    any phase (even while the upstream has not started reading the body) and
    sets ``disconnected`` so the forwarding engine can cancel upstream work.
    """

    def __init__(self, receive: Receive):
        self._receive = receive
        self.disconnected = asyncio.Event()
        self._chunks: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._pump: Optional[asyncio.Task] = None

    def start(self, read_body: bool) -> None:
        if self._pump is None:
            self._pump = asyncio.ensure_future(self._run(read_body))

    async def close(self) -> None:
        """Stop the pump. Errors raised by ``receive`` propagate here."""
        if self._pump is None:
            return
        self._pump.cancel()
        await asyncio.gather(self._pump, return_exceptions=True)
        if not self._pump.cancelled() and self._pump.exception() is not None:
            raise self._pump.exception()

    async def _run(self, read_body: bool) -> None:
        body_pending = read_body
        try:
            while True:
                message = await self._receive()
                if message["type"] == "http.disconnect":
                    self._mark_disconnected()
                    return
                if not body_pending:
                    continue
                more_body = message.get("more_body", False)
                await self._chunks.put((message.get("body", b""), more_body))
                body_pending = more_body
        except Exception:
            self._mark_disconnected()
            raise

    def _mark_disconnected(self) -> None:
        self.disconnected.set()
        # Unread body is worthless now; make room for the marker
        while not self._chunks.empty():
            self._chunks.get_nowait()
        self._chunks.put_nowait(_DISCONNECTED)

    async def iter_body(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._chunks.get()
            if item is _DISCONNECTED:
                raise ClientDisconnected("client disconnected while sending the body")
            chunk, more_body = item
            if chunk:
                yield chunk
            if not more_body:
                return

    async def watch_disconnect(self) -> None:
        await self.disconnected.wait()


@dataclass
class InboundRequest:
    method: str
    host: Optional[str]
    path: str
    headers: List[Tuple[str, str]]
    channel: InboundChannel = field(repr=False)

    @classmethod
    def from_scope(cls, scope: Scope, receive: Receive) -> "InboundRequest":
        headers = [
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in scope.get("headers", [])
        ]
        # raw_path keeps the client's percent-encoding intact
        raw_path = scope.get("raw_path") or scope["path"].encode("utf-8")
        path = raw_path.decode("latin-1")
        query = scope.get("query_string", b"")
        if query:
            path = f"{path}?{query.decode('latin-1')}"
        return cls(
            method=scope["method"].upper(),
            host=get_header(headers, "host"),
            path=path,
            headers=headers,
            channel=InboundChannel(receive),
        )
