"""Prometheus metrics for the event choreography path.

Publish side: outbox depth, publishes, publish failures, translation
failures.  Consume side: message outcomes, handler latency, dead letters.
"""

from __future__ import annotations

import logging

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# System metrics
# ---------------------------------------------------------------------------

SERVICE_INFO = Info("emis_service", "EMIS service information")

# ---------------------------------------------------------------------------
# Publish side
# ---------------------------------------------------------------------------

EVENTS_PUBLISHED = Counter(
    "emis_events_published_total",
    "Integration events written to the broker",
    ["topic", "event_type"],
)

PUBLISH_FAILURES = Counter(
    "emis_publish_failures_total",
    "Broker sends that raised a transport error",
    ["topic"],
)

TRANSLATION_FAILURES = Counter(
    "emis_translation_failures_total",
    "Domain events that could not be translated to integration events",
    ["event_type"],
)

DOMAIN_DISPATCH_FAILURES = Counter(
    "emis_domain_dispatch_failures_total",
    "In-process domain event handlers that raised after commit",
    ["event_type"],
)

OUTBOX_PENDING = Gauge(
    "emis_outbox_pending",
    "Outbox rows waiting to be published",
)

OUTBOX_FAILED = Counter(
    "emis_outbox_failed_total",
    "Outbox rows that exhausted their publish attempts",
)

# ---------------------------------------------------------------------------
# Consume side
# ---------------------------------------------------------------------------

MESSAGES_CONSUMED = Counter(
    "emis_messages_consumed_total",
    "Inbound messages by final outcome",
    ["topic", "group", "outcome"],
)

HANDLER_DURATION = Histogram(
    "emis_handler_duration_seconds",
    "Integration event handler latency",
    ["handler"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0],
)

DEAD_LETTERS = Counter(
    "emis_dead_letters_total",
    "Messages moved to the dead-letter channel",
    ["topic", "reason"],
)


def start_metrics_server(port: int = 9090, service: str = "") -> None:
    """Expose ``/metrics`` on *port* in a background thread."""
    SERVICE_INFO.info({"service": service})
    start_http_server(port)
    logger.info("Prometheus metrics server started on port %d", port)
