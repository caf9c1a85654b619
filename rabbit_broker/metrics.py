"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from typing import Optional

from prometheus_client import Counter, Histogram, start_http_server

from rabbit_broker.config import Settings


BROKER_EVENT_TOTAL = Counter(
    "broker_event_total", "Diagnostics events emitted by the broker", ["kind"]
)
BROKER_CHANNEL_OPEN_TOTAL = Counter(
    "broker_channel_open_total", "Channels opened (including re-creations after loss)"
)

# Publisher metrics
BROKER_PUBLISH_TOTAL = Counter(
    "broker_publish_total", "Total publish attempts", ["result"]
)

# Consumer metrics
BROKER_CONSUME_TOTAL = Counter(
    "broker_consume_total", "Deliveries handled per queue", ["queue", "outcome"]
)
BROKER_HANDLER_LATENCY_SECONDS = Histogram(
    "broker_handler_latency_seconds",
    "Time spent inside a consumer handler",
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5),
)


def start_metrics_server(port: Optional[int] = None) -> None:
    """Expose /metrics on ``port``, or on ``BROKER_METRICS_PORT`` when omitted."""
    start_http_server(port if port is not None else Settings().metrics_port)
