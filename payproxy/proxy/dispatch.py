import logging

from opentelemetry import trace
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from payproxy.config import ProxyConfig
from payproxy.proxy.classifier import (
    INVALID_GATEWAY,
    CorsPreflight,
    GatewayProxy,
    Redirect,
    Reject,
    classify,
)
from payproxy.proxy.engine import ForwardingEngine
from payproxy.proxy.headers import CORS_HEADERS
from payproxy.proxy.inbound import InboundRequest
from payproxy.proxy.writer import ResponseWriter
from payproxy.utils.exception_logging import log_exception_with_details
from payproxy.utils.traced_requests import traced_request

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)


async def handle_cors_preflight(writer: ResponseWriter) -> None:
    await writer.respond(200, CORS_HEADERS)


async def handle_redirect(
    inbound: InboundRequest, writer: ResponseWriter, decision: Redirect
) -> None:
    logger.info(f"[Redirect] {inbound.method} {inbound.path} -> {decision.target_url}")
    await writer.respond(
        302,
        [
            ("Location", decision.target_url),
            ("Content-Type", "text/plain"),
            ("Access-Control-Allow-Origin", "*"),
        ],
        f"Redirecting to {decision.target_url}".encode("utf-8"),
    )


async def handle_reject(
    inbound: InboundRequest, writer: ResponseWriter, status_code: int, reason: str
) -> None:
    logger.warning(
        f"[Dispatch] Rejected {inbound.method} {inbound.path} "
        f"(host: {inbound.host}): {reason}"
    )
    await writer.write_error(status_code, reason)


async def handle_gateway_proxy(
    inbound: InboundRequest,
    writer: ResponseWriter,
    decision: GatewayProxy,
    config: ProxyConfig,
    engine: ForwardingEngine,
) -> None:
    gateway = config.gateway(decision.gateway_key)
    if gateway is None:
        await handle_reject(inbound, writer, 400, INVALID_GATEWAY)
        return

    target_url = gateway.target + decision.path
    logger.info(f"[Proxy] {inbound.method} {inbound.path} -> {target_url}")
    await engine.forward(
        inbound,
        writer,
        target_url,
        [("Host", gateway.host), ("Referer", decision.referrer)],
    )


async def dispatch(
    inbound: InboundRequest,
    writer: ResponseWriter,
    config: ProxyConfig,
    engine: ForwardingEngine,
) -> None:
    decision = classify(inbound.method, inbound.host, inbound.path, config)
    with traced_request(
        tracer,
        operation="proxy_dispatch",
        start_message=f"[Dispatch] {inbound.method} {inbound.host}{inbound.path} -> {decision.kind}",
        extra_attrs={
            "http.method": inbound.method,
            "proxy.host": inbound.host,
            "proxy.route": decision.kind,
        },
        level=logging.DEBUG,
    ):
        if isinstance(decision, CorsPreflight):
            await handle_cors_preflight(writer)
        elif isinstance(decision, Reject):
            await handle_reject(inbound, writer, decision.status_code, decision.reason)
        elif isinstance(decision, GatewayProxy):
            await handle_gateway_proxy(inbound, writer, decision, config, engine)
        elif isinstance(decision, Redirect):
            await handle_redirect(inbound, writer, decision)
        else:
            raise TypeError(f"Unexpected route decision: {decision!r}")


class ProxyDispatchResponse(Response):
    """
    Response that takes over the raw ASGI channel for one proxied request.

    The body is never buffered by the framework: ``__call__`` streams through
    ResponseWriter and reads the request body directly from ``receive``.
    Anything escaping the request path ends as a 500, never as a crashed
    connection handler.
    """

    def __init__(self, config: ProxyConfig, engine: ForwardingEngine):
        super().__init__()
        self.config = config
        self.engine = engine

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        writer = ResponseWriter(send)
        try:
            inbound = InboundRequest.from_scope(scope, receive)
            await dispatch(inbound, writer, self.config, self.engine)
        except Exception as e:
            log_exception_with_details(logger, "[Dispatch] Unhandled request error", e)
            if not await writer.write_error(500, "Internal Server Error"):
                writer.abort()
        if self.background is not None:
            await self.background()
