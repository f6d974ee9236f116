"""Radar Gateway package.

Request-admission and tool-execution safety layer for a chat assistant:

- Token-bucket admission control (per caller and global)
- Content validation and sanitization of free text
- Default-deny, cached per-(caller, tool) permissions
- Deadline-bounded tool execution
- Non-blocking audit log plus rolling metrics with deduplicated alerts

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from radar_gateway import SafetyPipeline, GatewayConfig, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except Exception:
        return None


__version__ = (
    _read_version_from_pyproject()
    or "0.1.0"
)

__all__ = [
    "__version__",
    "SafetyPipeline",
    "GatewayConfig",
    "GatewayStore",
    "AdmissionController",
    "ContentGate",
    "PermissionGate",
    "BoundedExecutor",
    "AuditWriter",
    "MetricsAggregator",
    "MonitoringService",
    "GatewayError",
    "ToolTimeoutError",
    "run_with_deadline",
    "validate_user_input",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "SafetyPipeline": ("radar_gateway.pipeline", "SafetyPipeline"),
    "GatewayConfig": ("radar_gateway.config", "GatewayConfig"),
    "GatewayStore": ("radar_gateway.store", "GatewayStore"),
    "AdmissionController": ("radar_gateway.ratelimit", "AdmissionController"),
    "ContentGate": ("radar_gateway.content_gate", "ContentGate"),
    "PermissionGate": ("radar_gateway.permissions", "PermissionGate"),
    "BoundedExecutor": ("radar_gateway.executor", "BoundedExecutor"),
    "AuditWriter": ("radar_gateway.audit_log", "AuditWriter"),
    "MetricsAggregator": ("radar_gateway.metrics", "MetricsAggregator"),
    "MonitoringService": ("radar_gateway.monitoring", "MonitoringService"),
    "GatewayError": ("radar_gateway.errors", "GatewayError"),
    "ToolTimeoutError": ("radar_gateway.errors", "ToolTimeoutError"),
    "run_with_deadline": ("radar_gateway.executor", "run_with_deadline"),
    "validate_user_input": ("radar_gateway.content_gate", "validate_user_input"),
    "create_app": ("radar_gateway.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'radar_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
