"""OpenTelemetry tracing helpers for publishers and consumers.

Publishers inject the current W3C trace context into AMQP headers; the
consume dispatcher extracts it again so handler spans join the producer's
trace. Spans are exported to the console once ``start_tracing`` is called;
without it the global no-op tracer is used.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping

from opentelemetry import trace  # type: ignore
from opentelemetry.propagate import get_global_textmap, inject, set_global_textmap  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Tracer  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore


TRACER_NAME = "rabbit-broker"


def start_tracing(service_name: str = TRACER_NAME) -> Tracer:
    """Initialize a TracerProvider with a console exporter."""
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)

    # Ensure W3C tracecontext propagator is used for headers
    set_global_textmap(TraceContextTextMapPropagator())

    return trace.get_tracer(service_name)


def get_tracer(service_name: str = TRACER_NAME) -> Tracer:
    return trace.get_tracer(service_name)


def inject_headers(headers: Mapping[str, Any] | None = None) -> Dict[str, Any]:
    """Return a copy of ``headers`` with the current trace context injected."""
    carrier: Dict[str, Any] = {} if headers is None else dict(headers)
    inject(carrier)
    return carrier


def extract_context_from_headers(headers: Mapping[str, Any] | None):
    """Return a context object extracted from AMQP headers.

    Converts header values to strings to satisfy the propagator requirements.
    """
    carrier: Dict[str, str] = {}
    if headers:
        for k, v in headers.items():
            if isinstance(v, bytes):
                v = v.decode("utf-8", errors="replace")
            carrier[str(k)] = v if isinstance(v, str) else str(v)
    return get_global_textmap().extract(carrier)
