"""Periodic metric aggregation and alerting.

Every tick (60s by default) the service summarizes the rolling metric series,
logs the figures, and checks them against the alert threshold table:

    high_error_rate             errors / messages over 5 min > 10%   critical
    high_rate_limit_violations  violations in 1 min > 50             warning
    high_auth_failures          auth failures in 1 min > 10          warning
    high_tool_timeouts          tool timeouts in 5 min > 5           warning

An alert type fires at most once per cooldown window (5 min by default),
however often its condition is re-evaluated. A fired alert is logged and
written to the audit log as an ``error`` event.

Failures inside a tick are logged and never propagate.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from .audit_log import AuditEventType, AuditSeverity
from .config import AlertThresholds
from .metrics import (
    AUTH_FAILURES,
    ERRORS,
    MESSAGES_RECEIVED,
    RATE_LIMIT_VIOLATIONS,
    TOOL_EXECUTION_DURATION,
    TOOL_TIMEOUTS,
    MetricsAggregator,
)

logger = logging.getLogger("radar_gateway.monitoring")

ONE_MINUTE = 60.0
FIVE_MINUTES = 300.0


@dataclass
class FiredAlert:
    alert_type: str
    severity: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    fired_at: float = 0.0


class MonitoringService:
    def __init__(
        self,
        metrics: MetricsAggregator,
        audit: Optional[Any] = None,
        thresholds: Optional[AlertThresholds] = None,
        cooldown_seconds: float = 300.0,
        tick_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        history_size: int = 100,
    ):
        self.metrics = metrics
        self.audit = audit
        self.thresholds = thresholds or AlertThresholds()
        self.cooldown_seconds = float(cooldown_seconds)
        self.tick_seconds = float(tick_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._cooldowns: Dict[str, float] = {}
        self.fired_alerts: Deque[FiredAlert] = deque(maxlen=history_size)
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: Any, metrics: MetricsAggregator, **kwargs: Any) -> "MonitoringService":
        return cls(
            metrics,
            thresholds=config.alert_thresholds,
            cooldown_seconds=config.alert_cooldown_seconds,
            tick_seconds=config.metric_tick_seconds,
            **kwargs,
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning("Monitoring service already running")
            return
        logger.info("Starting monitoring service (tick=%ss)", self.tick_seconds)
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        logger.info("Stopping monitoring service")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            await self.aggregate()

    # ---------------------------
    # Tick
    # ---------------------------

    async def aggregate(self) -> List[str]:
        """Run one aggregation pass. Returns the alert types that fired."""
        fired: List[str] = []
        try:
            t = self.thresholds
            m = self.metrics

            messages_1m = m.calculate_stats(MESSAGES_RECEIVED, ONE_MINUTE)
            logger.info("Metric: messages received count_1m=%d", messages_1m.count)

            tools = m.calculate_stats(TOOL_EXECUTION_DURATION, FIVE_MINUTES)
            if tools.count > 0:
                logger.info(
                    "Metric: tool execution count_5m=%d avg_duration_ms=%d max_duration_ms=%d",
                    tools.count,
                    round(tools.avg),
                    round(tools.max),
                )

            error_count = m.calculate_stats(ERRORS, FIVE_MINUTES).count
            total_requests = m.calculate_stats(MESSAGES_RECEIVED, FIVE_MINUTES).count
            error_rate = error_count / total_requests if total_requests > 0 else 0.0
            if error_count > 0:
                logger.info(
                    "Metric: error rate error_count_5m=%d total_requests_5m=%d error_rate=%.2f%%",
                    error_count,
                    total_requests,
                    error_rate * 100,
                )
                if error_rate > t.error_rate_critical:
                    if await self.trigger_alert(
                        "high_error_rate",
                        AuditSeverity.CRITICAL,
                        f"Error rate is {error_rate * 100:.1f}% (threshold: {t.error_rate_critical * 100:.0f}%)",
                        {"errorCount": error_count, "totalRequests": total_requests, "errorRate": error_rate},
                    ):
                        fired.append("high_error_rate")

            violations = m.calculate_stats(RATE_LIMIT_VIOLATIONS, ONE_MINUTE).count
            if violations > 0:
                logger.info("Metric: rate limit violations count_1m=%d", violations)
                if violations > t.rate_limit_violations_warning:
                    if await self.trigger_alert(
                        "high_rate_limit_violations",
                        AuditSeverity.WARNING,
                        f"{violations} rate limit violations in the last minute",
                        {"count": violations},
                    ):
                        fired.append("high_rate_limit_violations")

            auth_failures = m.calculate_stats(AUTH_FAILURES, ONE_MINUTE).count
            if auth_failures > 0:
                logger.info("Metric: authentication failures count_1m=%d", auth_failures)
                if auth_failures > t.auth_failures_warning:
                    if await self.trigger_alert(
                        "high_auth_failures",
                        AuditSeverity.WARNING,
                        f"{auth_failures} authentication failures in the last minute (possible brute force attempt)",
                        {"count": auth_failures},
                    ):
                        fired.append("high_auth_failures")

            timeouts = m.calculate_stats(TOOL_TIMEOUTS, FIVE_MINUTES).count
            if timeouts > 0:
                logger.info("Metric: tool timeouts count_5m=%d", timeouts)
                if timeouts > t.tool_timeouts_warning:
                    if await self.trigger_alert(
                        "high_tool_timeouts",
                        AuditSeverity.WARNING,
                        f"{timeouts} tool timeouts in the last 5 minutes",
                        {"count": timeouts},
                    ):
                        fired.append("high_tool_timeouts")
        except Exception as e:
            logger.error("Error aggregating metrics: %s", e)
        return fired

    # ---------------------------
    # Alerts
    # ---------------------------

    def _claim(self, alert_type: str) -> Optional[float]:
        """Atomically check and set the cooldown. Returns fire time or None."""
        with self._lock:
            now = self._clock()
            last = self._cooldowns.get(alert_type)
            if last is not None and now - last < self.cooldown_seconds:
                return None
            self._cooldowns[alert_type] = now
            return now

    async def trigger_alert(
        self,
        alert_type: str,
        severity: AuditSeverity,
        message: str,
        data: Dict[str, Any],
    ) -> bool:
        """Fire an alert unless one of the same type fired within the cooldown."""
        fired_at = self._claim(alert_type)
        if fired_at is None:
            logger.debug("Alert %s suppressed (cooldown)", alert_type)
            return False

        severity = AuditSeverity(severity)
        level = logging.CRITICAL if severity == AuditSeverity.CRITICAL else logging.WARNING
        logger.log(level, "ALERT [%s]: %s %s", severity.value.upper(), message, data)

        alert = FiredAlert(alert_type, severity.value, message, dict(data), fired_at)
        self.fired_alerts.append(alert)

        if self.audit is not None:
            await self.audit.record(
                AuditEventType.ERROR,
                None,
                {"alertType": alert_type, "message": message, **data},
                severity,
            )
        return True

    def last_fired(self, alert_type: str) -> Optional[float]:
        with self._lock:
            return self._cooldowns.get(alert_type)
