"""Prometheus metrics for HTTP requests and tool calls.

Each collector owns its own ``CollectorRegistry`` so several gateway
applications (and tests) can live in one process.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger("chitty-connect.utils.metrics")

DURATION_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
EXPORTS_PREFIX = "/api/v1/exports/"


@dataclass
class RequestTracking:
    method: str
    path: str
    started: float


def path_label(path: str) -> str:
    """Route-level label for a request path; export file names are collapsed."""
    path = path.rstrip("/") or "/"
    if path.startswith(EXPORTS_PREFIX):
        return EXPORTS_PREFIX + "{path}"
    return path


class MetricsCollector:
    """Request and tool-call metrics in Prometheus exposition format."""

    def __init__(self, enabled: bool = True, pod_name: Optional[str] = None) -> None:
        self.is_enabled = enabled
        self.pod_name = pod_name or "unknown"
        self.registry = CollectorRegistry()

        self.requests_total = Counter(
            "chittyconnect_http_requests_total",
            "HTTP requests by method, path and status",
            ["method", "path", "status"],
            registry=self.registry,
        )
        self.request_duration = Histogram(
            "chittyconnect_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "path"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.requests_in_progress = Gauge(
            "chittyconnect_http_requests_in_progress",
            "HTTP requests currently being served",
            registry=self.registry,
        )
        self.tool_calls_total = Counter(
            "chittyconnect_tool_calls_total",
            "Tool calls by tool and outcome",
            ["tool_name", "status"],
            registry=self.registry,
        )
        self.tool_call_duration = Histogram(
            "chittyconnect_tool_call_duration_seconds",
            "Tool call duration in seconds",
            ["tool_name"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.user_activity_total = Counter(
            "chittyconnect_user_activity_total",
            "Tool calls per authentication method",
            ["auth_method"],
            registry=self.registry,
        )
        self.server_info = Gauge(
            "chittyconnect_server_info",
            "Gateway instance",
            ["pod"],
            registry=self.registry,
        )
        self.server_info.labels(pod=self.pod_name).set(1)

    def start_request_tracking(self, method: str, path: str) -> Optional[RequestTracking]:
        if not self.is_enabled:
            return None
        self.requests_in_progress.inc()
        return RequestTracking(method=method, path=path_label(path), started=time.monotonic())

    def end_request_tracking(self, context: Optional[RequestTracking], status: int) -> None:
        if context is None:
            return
        self.requests_in_progress.dec()
        self.requests_total.labels(
            method=context.method, path=context.path, status=str(status)
        ).inc()
        self.request_duration.labels(method=context.method, path=context.path).observe(
            time.monotonic() - context.started
        )

    def track_tool_call(
        self,
        tool_name: str,
        status: str,
        duration_seconds: Optional[float] = None,
        auth_method: Optional[str] = None,
    ) -> None:
        """Record one tool call.

        Args:
            tool_name: Tool name; unknown names are counted as "unknown"
            status: "success", "error" or "denied"
            duration_seconds: Dispatch time, when the tool actually ran
            auth_method: "api_key" or "oauth" of the caller
        """
        if not self.is_enabled:
            return
        self.tool_calls_total.labels(tool_name=tool_name, status=status).inc()
        if duration_seconds is not None:
            self.tool_call_duration.labels(tool_name=tool_name).observe(duration_seconds)
        if auth_method:
            self.user_activity_total.labels(auth_method=auth_method).inc()

    def generate_metrics(self) -> tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST


_metrics: Optional[MetricsCollector] = None


def initialize_metrics(pod_name: Optional[str] = None) -> MetricsCollector:
    """Create the global collector.

    Environment variables:
    - METRICS_ENABLED: Enable metrics collection (default: true)
    - POD_NAME: Instance label (default: unknown)
    """
    global _metrics
    enabled = os.getenv("METRICS_ENABLED", "true").lower() in ("true", "1", "yes")
    _metrics = MetricsCollector(enabled=enabled, pod_name=pod_name or os.getenv("POD_NAME"))
    if enabled:
        logger.info(f"Metrics collection initialized for pod: {_metrics.pod_name}")
    else:
        logger.debug("Metrics collection is disabled")
    return _metrics


def get_metrics() -> MetricsCollector:
    if _metrics is None:
        return initialize_metrics()
    return _metrics


def reset_metrics() -> None:
    """Drop the global collector so it is rebuilt from the environment."""
    global _metrics
    _metrics = None
