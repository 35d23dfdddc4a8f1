"""Process-wide request metrics.

Counters are plain integers mutated from the event loop; each increment
runs between awaits and so cannot interleave with another handler. The same
values are mirrored into a Prometheus registry for /metrics.
"""

import time
from datetime import datetime, timezone
from typing import Mapping, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram


def _rate(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator


class MetricsCollector:
    """Counters and timers for proxied requests."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.requests = 0
        self.errors = 0
        self.timeouts = 0
        self.retries = 0
        self.denied = 0
        self.bytes_transferred = 0

        # request_id -> monotonic start time, only for in-flight requests
        self._start_times: dict[str, float] = {}

        self.registry = registry or CollectorRegistry()
        self._requests_total = Counter(
            "registry_edge_requests_total", "Total proxied requests", registry=self.registry
        )
        self._errors_total = Counter(
            "registry_edge_errors_total", "Requests that ended in error", ["type"],
            registry=self.registry,
        )
        self._timeouts_total = Counter(
            "registry_edge_upstream_timeouts_total", "Upstream attempts that timed out",
            registry=self.registry,
        )
        self._retries_total = Counter(
            "registry_edge_upstream_retries_total", "Upstream retry attempts",
            registry=self.registry,
        )
        self._denied_total = Counter(
            "registry_edge_denied_total", "Requests denied by access control", ["reason"],
            registry=self.registry,
        )
        self._bytes_total = Counter(
            "registry_edge_bytes_transferred_total",
            "Response bytes with a known content-length",
            registry=self.registry,
        )
        self._duration = Histogram(
            "registry_edge_request_duration_seconds", "Proxied request duration",
            registry=self.registry,
        )

    @property
    def in_flight(self) -> int:
        return len(self._start_times)

    def record_request_start(self, request_id: str) -> None:
        self.requests += 1
        self._requests_total.inc()
        self._start_times[request_id] = time.monotonic()

    def record_request_end(
        self, request_id: str, headers: Optional[Mapping[str, str]] = None
    ) -> float:
        """Finish timing a request.

        Returns:
            Duration in milliseconds, 0 if the start was never recorded
        """
        started = self._start_times.pop(request_id, None)
        duration = time.monotonic() - started if started is not None else 0.0
        self._duration.observe(duration)

        length = (headers or {}).get("content-length")
        if length is not None:
            try:
                size = int(length)
            except ValueError:
                size = 0
            if size > 0:
                self.bytes_transferred += size
                self._bytes_total.inc(size)

        return duration * 1000

    def record_error(self, error_type: str = "UNKNOWN_ERROR") -> None:
        self.errors += 1
        self._errors_total.labels(type=error_type).inc()

    def record_timeout(self) -> None:
        self.timeouts += 1
        self._timeouts_total.inc()

    def record_retry(self) -> None:
        self.retries += 1
        self._retries_total.inc()

    def record_denied(self, reason: str = "") -> None:
        self.denied += 1
        self._denied_total.labels(reason=reason or "unknown").inc()

    def snapshot(self) -> dict:
        """Current counters and derived rates."""
        return {
            "requests": self.requests,
            "errors": self.errors,
            "timeouts": self.timeouts,
            "retries": self.retries,
            "denied": self.denied,
            "bytesTransferred": self.bytes_transferred,
            "errorRate": _rate(self.errors, self.requests),
            "timeoutRate": _rate(self.timeouts, self.requests),
            "retryRate": _rate(self.retries, self.requests),
            "denialRate": _rate(self.denied, self.requests),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
