"""
Guarded writes to the inbound connection.

Timeouts, upstream failures and client disconnects can all try to finish the
same response. ResponseWriter makes every write after the response was
started (for whole responses), completed, or after the connection went away
a silent no-op, and it never lets a failing ``send`` escape.
"""

import logging
from typing import Iterable, Tuple

from starlette.types import Message, Send

logger = logging.getLogger("uvicorn.error")


def _encode_headers(headers: Iterable[Tuple[str, str]]):
    return [
        (name.lower().encode("latin-1"), str(value).encode("latin-1"))
        for name, value in headers
    ]


class ResponseWriter:
    def __init__(self, send: Send):
        self._send = send
        self.headers_sent = False
        self.finished = False
        self.closed = False
        self.status_code = None
        self.bytes_written = 0

    @property
    def writable(self) -> bool:
        return not (self.finished or self.closed)

    async def start(self, status_code: int, headers: Iterable[Tuple[str, str]]) -> bool:
        if self.headers_sent or not self.writable:
            return False
        # Claimed before the first await so racing failure paths back off
        self.headers_sent = True
        self.status_code = status_code
        return await self._emit(
            {
                "type": "http.response.start",
                "status": status_code,
                "headers": _encode_headers(headers),
            }
        )

    async def write(self, chunk: bytes) -> bool:
        if not self.headers_sent or not self.writable:
            return False
        if not chunk:
            return True
        sent = await self._emit(
            {"type": "http.response.body", "body": chunk, "more_body": True}
        )
        if sent:
            self.bytes_written += len(chunk)
        return sent

    async def end(self, chunk: bytes = b"") -> bool:
        if not self.headers_sent or not self.writable:
            return False
        self.finished = True
        sent = await self._emit(
            {"type": "http.response.body", "body": chunk, "more_body": False}
        )
        if sent:
            self.bytes_written += len(chunk)
        return sent

    async def respond(
        self, status_code: int, headers: Iterable[Tuple[str, str]], body: bytes = b""
    ) -> bool:
        """Write a complete response in one go, unless anything was written already."""
        if self.headers_sent or not self.writable:
            return False
        headers = [
            (name, value)
            for name, value in headers
            if name.lower() != "content-length"
        ]
        headers.append(("Content-Length", str(len(body))))
        return await self.start(status_code, headers) and await self.end(body)

    async def write_error(self, status_code: int, message: str) -> bool:
        return await self.respond(
            status_code, [("Content-Type", "text/plain")], message.encode("utf-8")
        )

    def abort(self) -> None:
        """
        Give up on a started response.

        Nothing else is written and the final body message is never sent, so
        the server drops the connection instead of presenting a truncated
        body as complete.
        """
        if self.writable:
            logger.debug(
                f"[Writer] Aborting response after {self.bytes_written} bytes"
            )
        self.closed = True

    def mark_closed(self) -> None:
        self.closed = True

    async def _emit(self, message: Message) -> bool:
        try:
            await self._send(message)
            return True
        except OSError as e:
            # The server's client-disconnected error is an OSError
            logger.debug(f"[Writer] Inbound connection closed during write: {e!r}")
            self.closed = True
            return False
