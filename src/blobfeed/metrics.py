"""
Prometheus metrics for change-feed ingestion and cleanup.

Focused on essential metrics:
- Event outcomes per cycle (forwarded, filtered, malformed)
- Cycle status counts and duration
- Cursor commits
- Sweep deletions
- Publish failures
"""

import errno
import logging
import socket

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)


# =============================================================================
# Core Metrics
# =============================================================================

events_counter = Counter(
    "blobfeed_events_total",
    "Change feed events handled, by outcome",
    labelnames=["outcome"],
)

cycles_counter = Counter(
    "blobfeed_cycles_total",
    "Ingestion cycles by final status",
    labelnames=["status"],
)

cycle_duration_seconds = Histogram(
    "blobfeed_cycle_duration_seconds",
    "Wall-clock duration of ingestion cycles",
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 240.0, 300.0],
)

cursor_commits_counter = Counter(
    "blobfeed_cursor_commits_total",
    "Cursor tokens committed to the cursor store",
)

records_swept_counter = Counter(
    "blobfeed_records_swept_total",
    "Expired metadata records deleted by the cleanup sweeper",
)

publish_failures_counter = Counter(
    "blobfeed_publish_failures_total",
    "Publish attempts rejected by the downstream queue",
    labelnames=["publisher"],
)

connection_status_gauge = Gauge(
    "blobfeed_connection_status",
    "Publisher connection status (1=connected, 0=disconnected)",
    labelnames=["component"],
)


# =============================================================================
# Convenience Functions
# =============================================================================


def record_event(outcome: str, count: int = 1) -> None:
    """Record event outcomes: forwarded, filtered or malformed."""
    if count > 0:
        events_counter.labels(outcome=outcome).inc(count)


def record_cycle(status: str, duration_seconds: float) -> None:
    cycles_counter.labels(status=status).inc()
    cycle_duration_seconds.observe(duration_seconds)


def record_cursor_commit() -> None:
    cursor_commits_counter.inc()


def record_swept(count: int) -> None:
    if count > 0:
        records_swept_counter.inc(count)


def record_publish_failure(publisher: str) -> None:
    publish_failures_counter.labels(publisher=publisher).inc()


def update_connection_status(component: str, connected: bool) -> None:
    connection_status_gauge.labels(component=component).set(1 if connected else 0)


def start_metrics_server(preferred_port: int) -> int:
    """Start Prometheus metrics server with automatic port fallback.
    Returns actual port number that the server is listening on."""
    try:
        start_http_server(preferred_port, registry=REGISTRY)
        return preferred_port
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            logger.info(
                "Port already in use, finding available port",
                extra={"preferred_port": preferred_port},
            )

            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind(("", 0))
                s.listen(1)
                available_port = s.getsockname()[1]

            start_http_server(available_port, registry=REGISTRY)
            return available_port
        else:
            raise


__all__ = [
    "events_counter",
    "cycles_counter",
    "cycle_duration_seconds",
    "cursor_commits_counter",
    "records_swept_counter",
    "publish_failures_counter",
    "connection_status_gauge",
    "record_event",
    "record_cycle",
    "record_cursor_commit",
    "record_swept",
    "record_publish_failure",
    "update_connection_status",
    "start_metrics_server",
]
