"""Stable error taxonomy for the Radar gateway.

This module defines machine-readable error codes and a single exception type
used across admission, content validation, permissions, and tool execution.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
- A fixed user-facing reply per error kind; replies never echo matched input.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Admission / content
RADAR_E_RATE_LIMITED = "RADAR_E_RATE_LIMITED"
RADAR_E_VALIDATION_FAILED = "RADAR_E_VALIDATION_FAILED"

# Tools
RADAR_E_PERMISSION_DENIED = "RADAR_E_PERMISSION_DENIED"
RADAR_E_TOOL_TIMEOUT = "RADAR_E_TOOL_TIMEOUT"
RADAR_E_TOOL_ERROR = "RADAR_E_TOOL_ERROR"
RADAR_E_TOOL_UNKNOWN = "RADAR_E_TOOL_UNKNOWN"

# Generic
RADAR_E_BAD_REQUEST = "RADAR_E_BAD_REQUEST"
RADAR_E_INTERNAL = "RADAR_E_INTERNAL"


VALIDATION_REPLY = (
    "Your message contains invalid content and cannot be processed. "
    "Please review your input and try again."
)
TIMEOUT_REPLY = "The tool took too long to respond. Please try again later."
INTERNAL_REPLY = "An error occurred while processing your request. Please try again."


def rate_limit_reply(scope: str, retry_after_seconds: int) -> str:
    if scope == "global":
        return f"System is at capacity. Please wait {retry_after_seconds} second(s) and try again."
    return (
        f"You're sending messages too quickly. Please wait {retry_after_seconds} "
        "second(s) before trying again."
    )


def permission_reply(tool_name: str) -> str:
    return (
        f"You don't have permission to use the tool: {tool_name}. "
        "Please contact the administrator if you need access."
    )


@dataclass
class GatewayError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ToolTimeoutError(GatewayError):
    """Raised when a bounded operation does not settle before its deadline."""

    def __init__(self, message: str, timeout_ms: int):
        super().__init__(
            code=RADAR_E_TOOL_TIMEOUT,
            message=message,
            retryable=True,
            http_status=504,
            details={"timeout_ms": int(timeout_ms)},
        )
        self.timeout_ms = int(timeout_ms)


def is_timeout_error(exc: BaseException) -> bool:
    return isinstance(exc, ToolTimeoutError)


def gateway_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> GatewayError:
    return GatewayError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
