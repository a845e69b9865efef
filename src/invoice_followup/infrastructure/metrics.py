"""
Application Metrics.

Provides Prometheus-compatible metrics for monitoring. Metrics live in
process memory; each container instance exports its own values.
"""

import time
from collections import defaultdict
from threading import Lock
from typing import Dict, List, Optional

from flask import Flask, Response, g, request

from invoice_followup.infrastructure.logging import get_logger


logger = get_logger(__name__)


def _labels_key(labels: Dict[str, str]) -> str:
    """Create a unique, ordered key from labels."""
    if not labels:
        return ""
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


def _format_labels(key: str, extra: str = "") -> str:
    parts = [p for p in (key, extra) if p]
    return "{" + ",".join(parts) + "}" if parts else ""


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str) -> None:
        self.name = name
        self.description = description
        self._lock = Lock()

    def render(self) -> List[str]:
        raise NotImplementedError


class Counter(_Metric):
    """A monotonically increasing counter metric."""

    kind = "counter"

    def __init__(self, name: str, description: str) -> None:
        super().__init__(name, description)
        self._values: Dict[str, float] = defaultdict(float)

    def inc(self, value: float = 1.0, **labels: str) -> None:
        """Increment the counter."""
        key = _labels_key(labels)
        with self._lock:
            self._values[key] += value

    def get(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(_labels_key(labels), 0.0)

    def render(self) -> List[str]:
        with self._lock:
            return [
                f"{self.name}{_format_labels(key)} {value}"
                for key, value in sorted(self._values.items())
            ]


class Gauge(Counter):
    """A gauge metric that can go up and down."""

    kind = "gauge"

    def set(self, value: float, **labels: str) -> None:
        """Set the gauge value."""
        key = _labels_key(labels)
        with self._lock:
            self._values[key] = value

    def dec(self, value: float = 1.0, **labels: str) -> None:
        """Decrement the gauge."""
        self.inc(-value, **labels)


class Histogram(_Metric):
    """A histogram metric for tracking distributions."""

    kind = "histogram"
    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

    def __init__(
        self,
        name: str,
        description: str,
        buckets: tuple = DEFAULT_BUCKETS,
    ) -> None:
        super().__init__(name, description)
        self.buckets = buckets
        self._counts: Dict[str, Dict[float, int]] = defaultdict(lambda: defaultdict(int))
        self._sums: Dict[str, float] = defaultdict(float)
        self._totals: Dict[str, int] = defaultdict(int)

    def observe(self, value: float, **labels: str) -> None:
        """Record an observation."""
        key = _labels_key(labels)
        with self._lock:
            self._sums[key] += value
            self._totals[key] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._counts[key][bucket] += 1

    def render(self) -> List[str]:
        lines = []
        with self._lock:
            for key in sorted(self._totals):
                for bucket in self.buckets:
                    le = _format_labels(key, f'le="{bucket}"')
                    lines.append(f"{self.name}_bucket{le} {self._counts[key][bucket]}")
                inf = _format_labels(key, 'le="+Inf"')
                lines.append(f"{self.name}_bucket{inf} {self._totals[key]}")
                lines.append(f"{self.name}_sum{_format_labels(key)} {self._sums[key]}")
                lines.append(f"{self.name}_count{_format_labels(key)} {self._totals[key]}")
        return lines


class MetricsRegistry:
    """Registry for all application metrics."""

    def __init__(self) -> None:
        # HTTP metrics
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total number of HTTP requests",
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request latency in seconds",
        )
        self.http_requests_in_progress = Gauge(
            "http_requests_in_progress",
            "Number of HTTP requests currently being processed",
        )

        # Job lifecycle
        self.jobs_scheduled_total = Counter(
            "jobs_scheduled_total",
            "Total number of email jobs created",
        )
        self.jobs_sent_total = Counter(
            "jobs_sent_total",
            "Total number of email jobs delivered",
        )
        self.jobs_failed_total = Counter(
            "jobs_failed_total",
            "Total number of email jobs that failed delivery",
        )
        self.jobs_cancelled_total = Counter(
            "jobs_cancelled_total",
            "Total number of email jobs cancelled before delivery",
        )
        self.jobs_skipped_total = Counter(
            "jobs_skipped_total",
            "Total number of due jobs claimed by another processor",
        )

        # Correlation
        self.tracking_events_total = Counter(
            "tracking_events_total",
            "Total number of tracking events recorded",
        )
        self.payment_webhooks_total = Counter(
            "payment_webhooks_total",
            "Total number of payment webhooks received",
        )
        self.delivery_webhooks_total = Counter(
            "delivery_webhooks_total",
            "Total number of email provider events received",
        )

        # External service metrics
        self.external_requests_total = Counter(
            "external_requests_total",
            "Total number of external service requests",
        )
        self.external_request_duration_seconds = Histogram(
            "external_request_duration_seconds",
            "External service request latency in seconds",
        )
        self.circuit_breaker_state = Gauge(
            "circuit_breaker_state",
            "Current state of circuit breakers (0=closed, 1=half-open, 2=open)",
        )

    def all(self) -> List[_Metric]:
        return [m for m in vars(self).values() if isinstance(m, _Metric)]

    def to_prometheus_format(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        for metric in self.all():
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            lines.extend(metric.render())
        return "\n".join(lines) + "\n"


# Global metrics registry
_metrics: Optional[MetricsRegistry] = None


def get_metrics() -> MetricsRegistry:
    """Get global metrics registry."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics


def reset_metrics() -> None:
    """Drop all recorded values (for testing)."""
    global _metrics
    _metrics = None


def setup_metrics_middleware(app: Flask) -> None:
    """
    Setup Flask middleware for automatic HTTP metrics collection.

    Args:
        app: Flask application instance.
    """
    @app.before_request
    def before_request() -> None:
        g.metrics_start_time = time.time()
        get_metrics().http_requests_in_progress.inc(
            method=request.method,
            endpoint=request.endpoint or "unknown",
        )

    @app.after_request
    def after_request(response):
        metrics = get_metrics()
        duration = time.time() - getattr(g, "metrics_start_time", time.time())
        endpoint = request.endpoint or "unknown"
        method = request.method

        metrics.http_requests_total.inc(
            method=method,
            endpoint=endpoint,
            status=str(response.status_code),
        )
        metrics.http_request_duration_seconds.observe(
            duration,
            method=method,
            endpoint=endpoint,
        )
        metrics.http_requests_in_progress.dec(
            method=method,
            endpoint=endpoint,
        )

        return response


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint handler."""
    return Response(
        get_metrics().to_prometheus_format(),
        mimetype="text/plain; charset=utf-8",
    )
