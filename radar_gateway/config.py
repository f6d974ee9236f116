"""Runtime configuration for the Radar gateway.

Values are owned by the process entry point. ``GatewayConfig.from_env()``
reads ``RADAR_*`` environment variables; anything missing or malformed falls
back to the defaults below and is clamped to a sane range.

Environment variables:
- RADAR_RATE_LIMIT_USER: per-caller bucket, compact form like '30/m'.
- RADAR_RATE_LIMIT_GLOBAL: shared bucket across all callers, e.g. '100/m'.
- RADAR_RATE_LIMIT_MAX_KEYS: max per-caller buckets held in memory.
- RADAR_MAX_MESSAGE_LENGTH: content gate length limit.
- RADAR_TOOL_TIMEOUT_MS: deadline for every tool invocation.
- RADAR_TOOL_CANCEL_ON_TIMEOUT: cancel the abandoned tool task on timeout.
- RADAR_PERMISSION_CACHE_TTL_SECONDS / RADAR_PERMISSION_CACHE_MAX_ENTRIES
- RADAR_METRIC_RETENTION_SECONDS / RADAR_METRIC_TICK_SECONDS
- RADAR_ALERT_COOLDOWN_SECONDS
- RADAR_AUDIT_RETENTION_DAYS / RADAR_AUDIT_BUFFER_SIZE
- RADAR_DB_PATH: SQLite database for the allowlist and audit log.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .ratelimit import parse_rate_limit

logger = logging.getLogger("radar_gateway")


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except Exception:
        return default


def _get_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _get_rate(name: str, default_spec: str):
    spec = os.getenv(name, default_spec).strip()
    try:
        return parse_rate_limit(spec)
    except ValueError as e:
        logger.warning("Invalid rate limit %s=%r: %s (using %s)", name, spec, e, default_spec)
        return parse_rate_limit(default_spec)


@dataclass
class AlertThresholds:
    """Alert threshold table evaluated on every metrics tick."""

    error_rate_critical: float = 0.10
    rate_limit_violations_warning: int = 50
    auth_failures_warning: int = 10
    tool_timeouts_warning: int = 5


@dataclass
class GatewayConfig:
    user_capacity: float = 30.0
    user_refill_per_sec: float = 0.5
    global_capacity: float = 100.0
    global_refill_per_sec: float = 1.67
    max_bucket_keys: int = 10000

    max_message_length: int = 4000

    tool_timeout_ms: int = 30000
    cancel_on_timeout: bool = True

    permission_cache_ttl_seconds: float = 60.0
    permission_cache_max_entries: int = 50000

    metric_retention_seconds: float = 300.0
    metric_tick_seconds: float = 60.0
    alert_cooldown_seconds: float = 300.0
    alert_thresholds: AlertThresholds = field(default_factory=AlertThresholds)

    audit_retention_days: int = 90
    audit_buffer_size: int = 1000

    db_path: str = "radar_gateway.db"

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        user_cap, user_refill = _get_rate("RADAR_RATE_LIMIT_USER", "30/m")
        global_cap, global_refill = _get_rate("RADAR_RATE_LIMIT_GLOBAL", "100/m")

        max_keys = _get_int("RADAR_RATE_LIMIT_MAX_KEYS", cls.max_bucket_keys)
        max_len = _get_int("RADAR_MAX_MESSAGE_LENGTH", cls.max_message_length)
        timeout_ms = _get_int("RADAR_TOOL_TIMEOUT_MS", cls.tool_timeout_ms)
        cache_ttl = _get_float("RADAR_PERMISSION_CACHE_TTL_SECONDS", cls.permission_cache_ttl_seconds)
        cache_max = _get_int("RADAR_PERMISSION_CACHE_MAX_ENTRIES", cls.permission_cache_max_entries)
        retention = _get_float("RADAR_METRIC_RETENTION_SECONDS", cls.metric_retention_seconds)
        tick = _get_float("RADAR_METRIC_TICK_SECONDS", cls.metric_tick_seconds)
        cooldown = _get_float("RADAR_ALERT_COOLDOWN_SECONDS", cls.alert_cooldown_seconds)
        audit_days = _get_int("RADAR_AUDIT_RETENTION_DAYS", cls.audit_retention_days)
        audit_buf = _get_int("RADAR_AUDIT_BUFFER_SIZE", cls.audit_buffer_size)

        # Clamp
        if max_keys < 1:
            max_keys = cls.max_bucket_keys
        if max_len < 1:
            max_len = cls.max_message_length
        if timeout_ms < 1:
            timeout_ms = cls.tool_timeout_ms
        if cache_ttl < 0:
            cache_ttl = cls.permission_cache_ttl_seconds
        if cache_max < 1:
            cache_max = cls.permission_cache_max_entries
        if retention <= 0:
            retention = cls.metric_retention_seconds
        if tick <= 0:
            tick = cls.metric_tick_seconds
        if cooldown < 0:
            cooldown = cls.alert_cooldown_seconds
        if audit_days < 1:
            audit_days = cls.audit_retention_days
        if audit_buf < 1:
            audit_buf = cls.audit_buffer_size

        return cls(
            user_capacity=user_cap,
            user_refill_per_sec=user_refill,
            global_capacity=global_cap,
            global_refill_per_sec=global_refill,
            max_bucket_keys=max_keys,
            max_message_length=max_len,
            tool_timeout_ms=timeout_ms,
            cancel_on_timeout=_get_bool("RADAR_TOOL_CANCEL_ON_TIMEOUT", cls.cancel_on_timeout),
            permission_cache_ttl_seconds=cache_ttl,
            permission_cache_max_entries=cache_max,
            metric_retention_seconds=retention,
            metric_tick_seconds=tick,
            alert_cooldown_seconds=cooldown,
            audit_retention_days=audit_days,
            audit_buffer_size=audit_buf,
            db_path=os.getenv("RADAR_DB_PATH", cls.db_path).strip() or cls.db_path,
        )
