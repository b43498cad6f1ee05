"""Prometheus metrics for the sync and media pipeline.

Metrics live in the default registry and are exposed by the API on
``GET /metrics``; there is no separate exporter process.
"""

from __future__ import annotations

from typing import Final

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

MESSAGES_SYNCED_TOTAL: Final[Counter] = Counter(
    "archiver_messages_synced_total",
    "Messages persisted by sync invocations",
    labelnames=("mode",),
)

MEDIA_OUTCOMES_TOTAL: Final[Counter] = Counter(
    "archiver_media_outcomes_total",
    "Media fetch attempts by resulting status",
    labelnames=("status",),
)

MEDIA_DOWNLOAD_SECONDS: Final[Histogram] = Histogram(
    "archiver_media_download_seconds",
    "Duration of media downloads from the message source",
    buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

RATE_LIMITS_TOTAL: Final[Counter] = Counter(
    "archiver_rate_limits_total",
    "Rate-limit signals observed",
    labelnames=("component",),
)

API_CALLS_TOTAL: Final[Counter] = Counter(
    "archiver_api_calls_total",
    "Orchestrator HTTP calls by endpoint and result",
    labelnames=("endpoint", "status"),
)


def render_latest(registry: CollectorRegistry = REGISTRY) -> tuple[bytes, str]:
    """Return the exposition payload and its content type."""
    return generate_latest(registry), CONTENT_TYPE_LATEST


__all__ = [
    "API_CALLS_TOTAL",
    "MEDIA_DOWNLOAD_SECONDS",
    "MEDIA_OUTCOMES_TOTAL",
    "MESSAGES_SYNCED_TOTAL",
    "RATE_LIMITS_TOTAL",
    "render_latest",
]
