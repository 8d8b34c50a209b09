from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span


SERVICE_NAME = "crm-control-plane"
PROVIDER_CALL_SPAN = "ai.provider.call"

_configured = False
_provider: TracerProvider | None = None


def _tracer_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": os.getenv("OTEL_SERVICE_NAME", service_name),
                "service.version": os.getenv("APP_VERSION", "0.1.0"),
                "deployment.environment": os.getenv("APP_ENV", "local"),
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str = SERVICE_NAME, enable: bool = True) -> TracerProvider | None:
    """Install the SDK tracer provider once; exporters come from OTEL_EXPORTER_OTLP_ENDPOINT and OTEL_CONSOLE_EXPORTER."""
    global _configured

    if not enable:
        return None

    provider = _tracer_provider(service_name)
    if _configured:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def _provider_call_attributes(model: str, operation_type: str, streaming: bool) -> dict[str, Any]:
    attributes: dict[str, Any] = {"ai.model": model, "ai.operation_type": operation_type}
    if streaming:
        attributes["ai.streaming"] = True
    return attributes


@contextmanager
def provider_call_span(model: str, operation_type: str) -> Iterator[Span]:
    with get_tracer("app.billing").start_as_current_span(
        PROVIDER_CALL_SPAN,
        attributes=_provider_call_attributes(model, operation_type, streaming=False),
    ) as span:
        yield span


def start_streaming_provider_span(model: str, operation_type: str) -> Span:
    # Not made current: the stream is consumed across response iterations, the caller ends it.
    return get_tracer("app.billing").start_span(
        PROVIDER_CALL_SPAN,
        attributes=_provider_call_attributes(model, operation_type, streaming=True),
    )


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))

    return server_request_hook
