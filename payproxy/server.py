import logging
from typing import Optional, Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from payproxy.config import ProxyConfig, load_config
from payproxy.proxy.engine import ForwardingEngine
from payproxy.routes import router
from payproxy.vars import (
    METRICS_ENABLED,
    METRICS_PATH,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
)

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streamed responses.
    Relaying a large gateway response would otherwise emit one span per chunk.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing(app: FastAPI) -> None:
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    tracer_provider = trace.get_tracer_provider()
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            # "key=value,key2=value2", parsed by the exporter
            headers=OTLP_HEADERS or None,
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )
        logger.info(f"[Tracing] Exporting spans to {OTLP_ENDPOINT}")

    FastAPIInstrumentor.instrument_app(
        app,
        excluded_urls=METRICS_PATH,
        server_request_hook=None,
        client_request_hook=None,
    )


def configure_metrics(app: FastAPI) -> None:
    # Must be exposed before the catch-all proxy route is registered
    Instrumentator(excluded_handlers=[METRICS_PATH]).instrument(app).expose(
        app, endpoint=METRICS_PATH, include_in_schema=False
    )
    app_info = Info("payproxy_app_info", "Application Info")
    app_info.info({"app_name": SERVICE_NAME})


def create_app(
    config: ProxyConfig,
    engine: Optional[ForwardingEngine] = None,
    instrument: bool = False,
) -> FastAPI:
    """
    Build the proxy application around an immutable configuration.

    Every path is proxied, so the interactive docs are disabled; they would
    shadow ``/docs`` and friends on the proxied hosts.
    """
    app = FastAPI(
        title=SERVICE_NAME, docs_url=None, redoc_url=None, openapi_url=None
    )
    app.state.proxy_config = config
    app.state.forwarding_engine = engine or ForwardingEngine(
        timeout=config.request_timeout
    )

    if instrument:
        configure_tracing(app)
        if METRICS_ENABLED:
            configure_metrics(app)

    app.include_router(router)
    return app


app = create_app(load_config(), instrument=True)
