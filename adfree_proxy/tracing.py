import logging
from typing import Sequence

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

from adfree_proxy.vars import OTLP_ENDPOINT, OTLP_HEADERS

logger = logging.getLogger("uvicorn.error")
_provider_configured = False


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    Proxied bodies are relayed chunk by chunk, which would otherwise produce one
    span per chunk.
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


def configure_tracing(app: FastAPI, service_name: str) -> None:
    """Install the tracer provider once per process and instrument ``app``."""
    global _provider_configured
    if not _provider_configured:
        trace.set_tracer_provider(
            TracerProvider(resource=Resource.create({"service.name": service_name}))
        )
        if OTLP_ENDPOINT:
            otlp_exporter = OTLPSpanExporter(
                endpoint=OTLP_ENDPOINT,
                headers=OTLP_HEADERS or None,
            )
            trace.get_tracer_provider().add_span_processor(
                BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
            )
            logger.info(f"[Tracing] Exporting spans to {OTLP_ENDPOINT}")
        _provider_configured = True

    FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics")
