# services/api_gateway/metrics.py
"""Prometheus metrics of the webhook ingestion path.

Two kinds of indicators:
1. **Business** - how many deliveries ended processed / duplicate / error,
   and which parse reasons show up.
2. **Runtime**  - time spent on one webhook request.

> Start: call ``start_metrics_server()`` once per process - it serves
> ``/metrics`` on ``METRICS_PORT`` (9101 by default).
"""
from __future__ import annotations

import contextlib
import logging

from prometheus_client import Counter, Histogram, start_http_server

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Metric objects (module-level singletons)
# ---------------------------------------------------------------------------
WEBHOOK_REQUESTS = Counter(
    "sms_webhook_requests_total",
    "Webhook deliveries by terminal outcome",
    ["status", "category"],
)
DUPLICATES = Counter(
    "sms_webhook_duplicates_total",
    "Repeated deliveries, by how they were detected (lookup | constraint)",
    ["path"],
)
PARSE_FAILURES = Counter(
    "sms_parse_failures_total",
    "Messages that could not be parsed, by reason",
    ["reason"],
)
PROCESSING_TIME = Histogram(
    "sms_webhook_processing_seconds",
    "Time (sec) spent handling one webhook delivery",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

def start_metrics_server(port: int) -> None:  # pragma: no cover - network
    """Expose ``/metrics`` from a background thread. ``port=0`` disables it."""
    if not port:
        return
    with contextlib.suppress(OSError):  # already bound by a previous start
        start_http_server(port)
        log.info("Prometheus metrics available on http://0.0.0.0:%s/metrics", port)
