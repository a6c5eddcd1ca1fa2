"""
Lightweight metrics collection for RunSync.
Wraps prometheus_client with async-safe patterns.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import Counter, Histogram, Info, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
SOURCE_REQUESTS = Counter(
    "rs_source_requests_total",
    "Total upstream catalog HTTP requests",
    ["source", "endpoint", "status"],
)
RUNS_IMPORTED = Counter(
    "rs_runs_imported_total",
    "Runs persisted as unverified leaderboard entries",
    ["game"],
)
RUNS_SKIPPED = Counter(
    "rs_runs_skipped_total",
    "Runs skipped during import",
    ["game", "reason"],
)
TAXONOMY_MATCHES = Counter(
    "rs_taxonomy_matches_total",
    "External taxonomy entries resolved to local entries, by matching stage",
    ["kind", "stage"],
)
TAXONOMY_UNMATCHED = Counter(
    "rs_taxonomy_unmatched_total",
    "External taxonomy entries with no local counterpart",
    ["kind"],
)
VERIFICATIONS = Counter(
    "rs_verifications_total",
    "Verification attempts on imported runs",
    ["mode", "outcome"],
)
RUNS_REJECTED = Counter(
    "rs_runs_rejected_total",
    "Imported runs rejected (deleted) by an administrator",
)
RUNS_AUTOCLAIMED = Counter(
    "rs_runs_autoclaimed_total",
    "Unclaimed imported runs assigned to a registered player",
)

# ── Histograms ──────────────────────────────────────────────────────────
SOURCE_LATENCY = Histogram(
    "rs_source_latency_seconds",
    "Upstream catalog request latency in seconds",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
IMPORT_DURATION = Histogram(
    "rs_import_duration_seconds",
    "Wall time of a full import batch",
    ["game"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)
VERIFY_BATCH_DURATION = Histogram(
    "rs_verify_batch_duration_seconds",
    "Wall time of a batch verification",
    ["mode"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Info ────────────────────────────────────────────────────────────────
SERVICE_INFO = Info("rs_service", "Which RunSync service this process runs")


@asynccontextmanager
async def atrack_latency(histogram: Histogram, **labels: str) -> AsyncIterator[None]:
    """Async context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        histogram.labels(**labels).observe(elapsed)


def start_metrics_server(service: str, port: int | None = None) -> None:
    """Publish service info and start the Prometheus HTTP server, unless metrics are disabled."""
    settings = get_settings()
    SERVICE_INFO.info({"service": service, "environment": settings.environment.value})
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
