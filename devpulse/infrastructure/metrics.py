"""
Prometheus metrics for the cache-aside engine.

Defines metrics for:
- Cache decisions (hit / miss / stale)
- Sync attempts and their duration
- GitHub API requests and remaining quota
- Errors by source

The collector owns its registry, so one instance is created at process start
and handed to the services that record into it.
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    push_to_gateway,
)

logger = logging.getLogger(__name__)

# Buckets for sync duration histograms (in seconds)
SYNC_DURATION_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
DEFAULT_JOB = "devpulse"


class MetricsCollector:
    """
    Prometheus metrics collector for DevPulse.

    Usage:
        metrics = MetricsCollector()

        metrics.record_cache_operation("hit")
        metrics.record_sync("profile", "success", 0.42)

        metrics.push("localhost:9091")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.cache_operations = Counter(
            "devpulse_cache_operations_total",
            "Cache lookups by outcome",
            ["operation"],  # hit, miss, stale
            registry=self.registry,
        )

        self.sync_operations = Counter(
            "devpulse_sync_operations_total",
            "Sync attempts by type and terminal status",
            ["sync_type", "status"],
            registry=self.registry,
        )

        self.sync_duration = Histogram(
            "devpulse_sync_duration_seconds",
            "Time spent in a single sync",
            ["sync_type"],
            buckets=SYNC_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.github_requests = Counter(
            "devpulse_github_requests_total",
            "GitHub API requests by endpoint and HTTP status",
            ["endpoint", "status"],
            registry=self.registry,
        )

        self.github_rate_limit_remaining = Gauge(
            "devpulse_github_rate_limit_remaining",
            "Remaining GitHub core API requests",
            registry=self.registry,
        )

        self.errors = Counter(
            "devpulse_errors_total",
            "Errors by source",
            ["source"],
            registry=self.registry,
        )

        self.cached_subjects = Gauge(
            "devpulse_cached_subjects",
            "Number of subjects held in the cache",
            registry=self.registry,
        )

    def push(self, gateway: str, job: str = DEFAULT_JOB) -> None:
        """Push every metric of this run to a Prometheus Pushgateway."""
        push_to_gateway(gateway, job=job, registry=self.registry)
        logger.info(f"Metrics pushed to {gateway} (job={job})")

    def record_cache_operation(self, operation: str) -> None:
        self.cache_operations.labels(operation=operation).inc()

    def record_sync(self, sync_type: str, status: str, duration_seconds: float) -> None:
        self.sync_operations.labels(sync_type=sync_type, status=status).inc()
        self.sync_duration.labels(sync_type=sync_type).observe(duration_seconds)

    def record_github_request(self, endpoint: str, status: str) -> None:
        self.github_requests.labels(endpoint=endpoint, status=status).inc()

    def set_rate_limit_remaining(self, remaining: int) -> None:
        self.github_rate_limit_remaining.set(remaining)

    def record_error(self, source: str) -> None:
        self.errors.labels(source=source).inc()

    def set_cached_subjects(self, count: int) -> None:
        self.cached_subjects.set(count)
