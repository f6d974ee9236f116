"""Metrics for the Radar gateway.

Two layers:

- ``MetricsAggregator``: in-process rolling series (5 minute retention) used
  by the monitoring tick to compute count/sum/avg/min/max and raise alerts.
- Prometheus mirrors of the same samples for external scraping, with
  low-cardinality labels only (metric name, tool name, success flag).

Recording a metric never raises.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from fastapi import Request

logger = logging.getLogger("radar_gateway.metrics")

# Series names the monitoring tick reads.
MESSAGES_RECEIVED = "messages_received"
TOOL_EXECUTION_DURATION = "tool_execution_duration"
ERRORS = "errors"
RATE_LIMIT_VIOLATIONS = "rate_limit_violations"
AUTH_FAILURES = "auth_failures"
TOOL_TIMEOUTS = "tool_timeouts"


# ---------------------------
# Prometheus objects
# ---------------------------
METRIC_EVENTS_TOTAL = Counter(
    "radar_metric_events_total",
    "Samples recorded per in-process metric series",
    ["metric"],
)
TOOL_DURATION_SECONDS = Histogram(
    "radar_tool_duration_seconds",
    "Tool execution duration in seconds",
    ["tool", "success"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 30, 60),
)
HTTP_REQUESTS_TOTAL = Counter(
    "radar_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "radar_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)


def _export(name: str, value: float, tags: Optional[Dict[str, str]]) -> None:
    METRIC_EVENTS_TOTAL.labels(metric=name).inc()
    if name == TOOL_EXECUTION_DURATION:
        tags = tags or {}
        TOOL_DURATION_SECONDS.labels(
            tool=str(tags.get("toolName", "unknown")),
            success=str(tags.get("success", "unknown")),
        ).observe(float(value) / 1000.0)


@dataclass
class MetricSample:
    value: float
    timestamp: float
    tags: Optional[Dict[str, str]] = None


@dataclass
class MetricStats:
    count: int = 0
    sum: float = 0.0
    avg: float = 0.0
    min: float = 0.0
    max: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "sum": self.sum, "avg": self.avg, "min": self.min, "max": self.max}


def _tags_match(sample_tags: Optional[Dict[str, str]], wanted: Optional[Dict[str, str]]) -> bool:
    if not wanted:
        return True
    have = sample_tags or {}
    return all(have.get(k) == v for k, v in wanted.items())


class MetricsAggregator:
    """Rolling in-memory metric series keyed by name.

    Samples older than the retention window are pruned on every write to
    their series. One lock covers append+prune and reads.
    """

    def __init__(
        self,
        retention_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        export: bool = True,
    ):
        self.retention_seconds = float(retention_seconds)
        self._clock = clock
        self._export = export
        self._lock = threading.Lock()
        self._series: Dict[str, Deque[MetricSample]] = {}

    def _prune(self, series: Deque[MetricSample], now: float) -> None:
        cutoff = now - self.retention_seconds
        while series and series[0].timestamp < cutoff:
            series.popleft()

    def record_metric(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        try:
            value = float(value)
            with self._lock:
                now = self._clock()
                series = self._series.get(name)
                if series is None:
                    series = deque()
                    self._series[name] = series
                series.append(MetricSample(value, now, dict(tags) if tags else None))
                self._prune(series, now)
            if self._export:
                _export(name, value, tags)
        except Exception as e:
            logger.error("Failed to record metric %s: %s", name, e)

    def increment_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> None:
        self.record_metric(name, 1, tags)

    def record_timing(self, name: str, duration_ms: float, tags: Optional[Dict[str, str]] = None) -> None:
        self.record_metric(name, duration_ms, tags)

    def samples(
        self,
        name: str,
        window_seconds: Optional[float] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> List[MetricSample]:
        window = self.retention_seconds if window_seconds is None else float(window_seconds)
        with self._lock:
            cutoff = self._clock() - window
            series = self._series.get(name) or ()
            return [s for s in series if s.timestamp >= cutoff and _tags_match(s.tags, tags)]

    def calculate_stats(
        self,
        name: str,
        window_seconds: Optional[float] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> MetricStats:
        values = [s.value for s in self.samples(name, window_seconds, tags)]
        if not values:
            return MetricStats()
        total = sum(values)
        return MetricStats(count=len(values), sum=total, avg=total / len(values), min=min(values), max=max(values))

    def series_names(self) -> List[str]:
        with self._lock:
            return sorted(self._series)

    def snapshot(self) -> Dict[str, int]:
        return {
            "messages_1m": self.calculate_stats(MESSAGES_RECEIVED, 60).count,
            "errors_5m": self.calculate_stats(ERRORS, 300).count,
            "rate_limit_violations_1m": self.calculate_stats(RATE_LIMIT_VIOLATIONS, 60).count,
            "auth_failures_1m": self.calculate_stats(AUTH_FAILURES, 60).count,
            "tool_timeouts_5m": self.calculate_stats(TOOL_TIMEOUTS, 300).count,
            "tool_executions_5m": self.calculate_stats(TOOL_EXECUTION_DURATION, 300).count,
        }


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    from fastapi.responses import Response

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            try:
                route = request.scope.get("route")
                route_path = getattr(route, "path", None) or request.url.path
                HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
                HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(
                    time.time() - start
                )
            except Exception:
                # metrics must never break the app
                pass

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None:
            try:
                ok = authorize(request)
            except Exception:
                ok = False
            if not ok:
                return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
