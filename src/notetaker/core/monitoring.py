"""Prometheus metrics for the reconciliation worker.

Provides module-level counters for scheduler ticks, batch items, bot
directory calls, meeting transitions and queued jobs, plus
start_metrics_server() for the optional scrape endpoint.
"""

from __future__ import annotations

import structlog
from prometheus_client import Counter, Gauge, start_http_server

logger = structlog.get_logger(__name__)

# ── Scheduler Metrics ────────────────────────────────────────────────────────

scheduler_ticks_total = Counter(
    "notetaker_scheduler_ticks_total",
    "Recurring task ticks by outcome",
    ["task", "outcome"],
)

batch_items_total = Counter(
    "notetaker_batch_items_total",
    "Fan-out batch items processed",
    ["operation", "outcome"],
)

# ── Bot Directory Metrics ────────────────────────────────────────────────────

bot_directory_requests_total = Counter(
    "notetaker_bot_directory_requests_total",
    "Bot directory API calls by classified outcome",
    ["operation", "outcome"],
)

# ── Lifecycle Metrics ────────────────────────────────────────────────────────

meeting_transitions_total = Counter(
    "notetaker_meeting_transitions_total",
    "Meeting status transitions",
    ["from_status", "to_status"],
)

dispatch_outcomes_total = Counter(
    "notetaker_dispatch_outcomes_total",
    "Bot dispatch and discovery outcomes",
    ["outcome"],
)

# ── Job Queue Metrics ────────────────────────────────────────────────────────

jobs_total = Counter(
    "notetaker_jobs_total",
    "Queued jobs by terminal status",
    ["queue", "status"],
)

jobs_pending = Gauge(
    "notetaker_jobs_pending",
    "Jobs waiting or running per queue",
    ["queue"],
)


def start_metrics_server(port: int) -> None:
    """Expose /metrics on the given port; a port of 0 disables the exporter."""
    if port <= 0:
        return
    start_http_server(port)
    logger.info("metrics.server_started", port=port)
