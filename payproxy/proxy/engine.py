"""
Streaming forwarder for gateway-bound requests.

A forward runs two child tasks against one deadline:

    exchange  - sends the request upstream (streaming the inbound body for
                POST/PUT/PATCH) and relays the upstream response chunk by
                chunk. Each chunk waits for the downstream ``send`` to
                finish, so a slow client slows the upstream reads down
                instead of buffering them.
    watcher   - waits for the inbound channel to report a disconnect, which
                it notices even before the upstream reads the body.

Whichever finishes first decides the outcome; if neither finishes before the
deadline the forward times out. Unfinished tasks are cancelled, which closes
the upstream connection. Every forward ends in a ForwardResult instead of an
exception.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple

import httpx
from opentelemetry import trace

from payproxy.proxy.headers import (
    apply_cors_headers,
    drop_headers,
    merge_headers,
    sanitize_headers,
)
from payproxy.proxy.inbound import ClientDisconnected, InboundRequest
from payproxy.proxy.writer import ResponseWriter
from payproxy.utils.exception_logging import format_exception_message

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
DEFAULT_TIMEOUT_S = 30.0


class ForwardOutcome(str, Enum):
    COMPLETED = "completed"
    CONNECT_ERROR = "connect_error"
    TIMEOUT = "timeout"
    UPSTREAM_PROTOCOL_ERROR = "upstream_protocol_error"
    CLIENT_DISCONNECTED = "client_disconnected"


# Status sent to the client when a failure happens before anything was written
ERROR_RESPONSES = {
    ForwardOutcome.CONNECT_ERROR: (500, "Internal Server Error"),
    ForwardOutcome.UPSTREAM_PROTOCOL_ERROR: (500, "Internal Server Error"),
    ForwardOutcome.TIMEOUT: (504, "Gateway Timeout"),
}


@dataclass
class ForwardResult:
    outcome: ForwardOutcome
    status_code: Optional[int] = None
    bytes_sent: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is ForwardOutcome.COMPLETED


def build_outbound_headers(
    inbound: InboundRequest, extra_headers: Iterable[Tuple[str, str]]
):
    headers = merge_headers(sanitize_headers(inbound.headers), extra_headers)
    if inbound.method not in BODY_METHODS:
        headers = drop_headers(headers, "content-length")
    return merge_headers(headers, [("Connection", "close")])


class ForwardingEngine:
    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self._transport = transport

    async def forward(
        self,
        inbound: InboundRequest,
        writer: ResponseWriter,
        target_url: str,
        extra_headers: Iterable[Tuple[str, str]] = (),
    ) -> ForwardResult:
        with tracer.start_as_current_span("proxy_request") as span:
            span.set_attribute("proxy.target_url", target_url)
            span.set_attribute("proxy.method", inbound.method)

            headers = build_outbound_headers(inbound, extra_headers)
            reads_body = inbound.method in BODY_METHODS
            body = inbound.channel.iter_body() if reads_body else None

            inbound.channel.start(read_body=reads_body)
            exchange = asyncio.ensure_future(
                self._exchange(inbound, writer, target_url, headers, body)
            )
            watcher = asyncio.ensure_future(self._watch(inbound, writer))
            try:
                done, _ = await asyncio.wait(
                    {exchange, watcher},
                    timeout=self.timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                for task in (exchange, watcher):
                    if not task.done():
                        task.cancel()
                await asyncio.gather(exchange, watcher, return_exceptions=True)
                await inbound.channel.close()

            if exchange in done:
                result = exchange.result()
            elif watcher in done:
                result = ForwardResult(
                    ForwardOutcome.CLIENT_DISCONNECTED,
                    status_code=writer.status_code,
                    bytes_sent=writer.bytes_written,
                    error="client disconnected",
                )
            elif writer.finished and not writer.closed:
                # Deadline hit while the upstream connection was still closing
                result = ForwardResult(
                    ForwardOutcome.COMPLETED,
                    status_code=writer.status_code,
                    bytes_sent=writer.bytes_written,
                )
            else:
                result = ForwardResult(
                    ForwardOutcome.TIMEOUT,
                    status_code=writer.status_code,
                    bytes_sent=writer.bytes_written,
                    error=f"no complete response within {self.timeout:g}s",
                )

            if result.status_code is not None:
                span.set_attribute("proxy.status_code", result.status_code)
            if not result.ok:
                span.set_attribute("proxy.error", result.outcome.value)
            await self._finish(inbound, writer, target_url, result)
            return result

    @staticmethod
    async def _watch(inbound: InboundRequest, writer: ResponseWriter) -> None:
        await inbound.channel.watch_disconnect()
        if writer.finished:
            # ASGI servers report a disconnect once the response is complete;
            # the exchange is only closing the upstream connection by now.
            await asyncio.get_running_loop().create_future()

    async def _exchange(self, inbound, writer, target_url, headers, body) -> ForwardResult:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                async with client.stream(
                    inbound.method, target_url, headers=headers, content=body
                ) as response:
                    response_headers = apply_cors_headers(
                        sanitize_headers(response.headers)
                    )
                    if not await writer.start(response.status_code, response_headers):
                        return self._disconnected(writer, response.status_code)
                    # Raw bytes: content-encoding is relayed untouched
                    async for chunk in response.aiter_raw():
                        if not await writer.write(chunk):
                            return self._disconnected(writer, response.status_code)
                    if not await writer.end():
                        return self._disconnected(writer, response.status_code)
                    return ForwardResult(
                        ForwardOutcome.COMPLETED,
                        status_code=response.status_code,
                        bytes_sent=writer.bytes_written,
                    )
        except ClientDisconnected:
            return self._disconnected(writer, writer.status_code)
        except httpx.TimeoutException as e:
            return self._failed(ForwardOutcome.TIMEOUT, writer, inbound, e)
        except httpx.ConnectError as e:
            return self._failed(ForwardOutcome.CONNECT_ERROR, writer, inbound, e)
        except httpx.RequestError as e:
            return self._failed(ForwardOutcome.UPSTREAM_PROTOCOL_ERROR, writer, inbound, e)

    @staticmethod
    def _disconnected(writer: ResponseWriter, status_code) -> ForwardResult:
        return ForwardResult(
            ForwardOutcome.CLIENT_DISCONNECTED,
            status_code=status_code,
            bytes_sent=writer.bytes_written,
            error="client disconnected",
        )

    def _failed(self, outcome, writer, inbound, exc) -> ForwardResult:
        # A failing body upload can surface as an upstream error
        if inbound.channel.disconnected.is_set():
            return self._disconnected(writer, writer.status_code)
        return ForwardResult(
            outcome,
            status_code=writer.status_code,
            bytes_sent=writer.bytes_written,
            error=format_exception_message(exc) or type(exc).__name__,
        )

    async def _finish(self, inbound, writer, target_url, result: ForwardResult) -> None:
        if result.ok:
            logger.debug(
                f"[Proxy] {inbound.method} {target_url} completed with "
                f"{result.status_code} ({result.bytes_sent} bytes)"
            )
            return

        if result.outcome is ForwardOutcome.CLIENT_DISCONNECTED:
            writer.mark_closed()
            logger.info(
                f"[Proxy] Client disconnected during {inbound.method} {target_url}; "
                f"upstream request aborted after {result.bytes_sent} bytes"
            )
            return

        if result.outcome is ForwardOutcome.TIMEOUT:
            logger.error(
                f"[Proxy] Proxy request timeout for {inbound.method} {target_url}: {result.error}"
            )
        else:
            logger.error(
                f"[Proxy] Proxy error ({result.outcome.value}) for "
                f"{inbound.method} {target_url}: {result.error}"
            )

        status_code, message = ERROR_RESPONSES[result.outcome]
        if not await writer.write_error(status_code, message):
            # Part of the response is already out; drop the connection instead
            writer.abort()
