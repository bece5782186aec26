import logging
from typing import Dict, Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter, SpanExportResult
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from reverse_proxy.routes import get_proxy_routes
from reverse_proxy.vars import METRICS_PATH, OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

logger = logging.getLogger("uvicorn.error")

# Every path belongs to the upstream, so no docs routes
app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
instrumentator = Instrumentator(excluded_handlers=[METRICS_PATH])

instrumentator.instrument(app).expose(app, endpoint=METRICS_PATH)


# ASGI events emitted once per body chunk; a proxied upload or download would
# otherwise add a span per chunk to every forwarded request's trace
BODY_CHUNK_EVENTS = frozenset({"http.request", "http.response.body"})


class BodyChunkSpanExporter(SpanExporter):
    """Forwards spans to ``exporter`` minus the per-chunk receive/send spans of relayed bodies."""

    def __init__(self, exporter: SpanExporter, dropped_events=BODY_CHUNK_EVENTS):
        self.exporter = exporter
        self.dropped_events = frozenset(dropped_events)
        self.dropped = 0

    def _is_body_chunk(self, span: ReadableSpan) -> bool:
        attributes = span.attributes or {}
        return attributes.get("asgi.event.type") in self.dropped_events

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        kept = [span for span in spans if not self._is_body_chunk(span)]
        self.dropped += len(spans) - len(kept)
        if not kept:
            return SpanExportResult.SUCCESS
        return self.exporter.export(kept)

    def shutdown(self):
        logger.debug(f"[Server] Dropped {self.dropped} body chunk spans")
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def _otlp_headers(raw: str) -> Dict[str, str]:
    headers = {}
    for entry in raw.split(","):
        name, sep, value = entry.partition("=")
        if sep and name.strip():
            headers[name.strip()] = value.strip()
    return headers


trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
tracer_provider = trace.get_tracer_provider()
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=_otlp_headers(OTLP_HEADERS) or None,
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(BodyChunkSpanExporter(otlp_exporter)))
    logger.info(f"[Server] Exporting traces to {OTLP_ENDPOINT}")

FastAPIInstrumentor.instrument_app(app, excluded_urls=METRICS_PATH)

# Add app_name to the metrics
app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

# Catch-all, must stay the last route
app.router.routes.extend(get_proxy_routes())
