"""Fixed composition of the safety layer.

    admission -> content gate -> (conversational engine, external)
        -> for each tool call: permission gate -> bounded executor

Every stage reports to the audit writer and the metrics aggregator.
``SafetyPipeline`` owns one instance of each component; nothing here is a
module-level singleton, so tests and servers can run several side by side.
"""

from __future__ import annotations

import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .audit_log import AuditWriter
from .config import GatewayConfig
from .content_gate import ContentGate, sanitize_output
from .errors import (
    INTERNAL_REPLY,
    RADAR_E_INTERNAL,
    RADAR_E_PERMISSION_DENIED,
    RADAR_E_RATE_LIMITED,
    RADAR_E_TOOL_TIMEOUT,
    RADAR_E_TOOL_UNKNOWN,
    RADAR_E_VALIDATION_FAILED,
    TIMEOUT_REPLY,
    VALIDATION_REPLY,
    GatewayError,
    permission_reply,
    rate_limit_reply,
)
from .executor import BoundedExecutor, ToolConnector, truncate_tool_result
from .metrics import MetricsAggregator
from .monitoring import MonitoringService
from .permissions import PermissionGate
from .ratelimit import AdmissionController
from .store import GatewayStore

logger = logging.getLogger("radar_gateway")


@dataclass
class MessageDecision:
    allowed: bool
    reply: Optional[str] = None
    sanitized: Optional[str] = None
    code: Optional[str] = None
    retry_after_seconds: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reply": self.reply,
            "sanitized": self.sanitized,
            "code": self.code,
            "retry_after_seconds": self.retry_after_seconds,
        }


@dataclass
class ToolOutcome:
    success: bool
    result: Any = None
    reply: Optional[str] = None
    code: Optional[str] = None
    duration_ms: Optional[int] = None
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "result": self.result,
            "reply": self.reply,
            "code": self.code,
            "duration_ms": self.duration_ms,
            "truncated": self.truncated,
        }


def tool_error_reply(tool_name: str, message: str) -> str:
    return f"The tool {tool_name} failed: {message}"


class SafetyPipeline:
    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        store: Optional[GatewayStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or GatewayConfig.from_env()
        self.store = store or GatewayStore(self.config.db_path)
        self.metrics = MetricsAggregator(self.config.metric_retention_seconds, clock=clock)
        self.audit = AuditWriter.from_config(self.config, self.store)
        self.admission = AdmissionController.from_config(
            self.config, audit=self.audit, metrics=self.metrics, clock=clock
        )
        self.content_gate = ContentGate.from_config(self.config)
        self.permissions = PermissionGate.from_config(
            self.config, self.store, audit=self.audit, metrics=self.metrics, clock=clock
        )
        self.executor = BoundedExecutor.from_config(
            self.config,
            self.permissions,
            audit=self.audit,
            metrics=self.metrics,
            content_gate=self.content_gate,
        )
        self.monitor = MonitoringService.from_config(self.config, self.metrics, audit=self.audit, clock=clock)

    # ---------------------------
    # Lifecycle
    # ---------------------------

    def register_tool(self, connector: ToolConnector) -> None:
        self.executor.register(connector)

    def start(self) -> None:
        """Start background tasks. Must be called from a running event loop."""
        self.audit.start()
        self.monitor.start()

    async def stop(self) -> None:
        await self.monitor.stop()
        await self.audit.stop()

    # ---------------------------
    # Inbound messages
    # ---------------------------

    async def _unexpected(self, caller_id: Optional[int], where: str, e: BaseException) -> None:
        logger.error("Unexpected error in %s for caller %s: %s", where, caller_id, e)
        self.metrics.increment_counter("errors", {"component": where})
        await self.audit.error(caller_id, str(e), traceback.format_exc())

    async def admit_message(self, caller_id: int, text: str) -> MessageDecision:
        try:
            admitted = await self.admission.try_admit(caller_id)
            if not admitted.allowed:
                return MessageDecision(
                    allowed=False,
                    reply=rate_limit_reply(str(admitted.scope), admitted.retry_after_seconds),
                    code=RADAR_E_RATE_LIMITED,
                    retry_after_seconds=admitted.retry_after_seconds,
                )

            await self.audit.message_received(caller_id, len(text))
            self.metrics.increment_counter("messages_received")

            result = self.content_gate.validate(text)
            if not result.is_valid:
                await self.audit.validation_failure(caller_id, result.violations, len(text))
                self.metrics.increment_counter("validation_failures", {"kind": "message"})
                return MessageDecision(allowed=False, reply=VALIDATION_REPLY, code=RADAR_E_VALIDATION_FAILED)

            return MessageDecision(allowed=True, sanitized=result.sanitized)
        except Exception as e:
            await self._unexpected(caller_id, "message", e)
            return MessageDecision(allowed=False, reply=INTERNAL_REPLY, code=RADAR_E_INTERNAL)

    async def record_message_sent(self, caller_id: int, text: str) -> str:
        """Audit an outbound reply and return it sanitized for delivery."""
        cleaned = sanitize_output(text)
        await self.audit.message_sent(caller_id, len(cleaned))
        self.metrics.increment_counter("messages_sent")
        return cleaned

    async def record_auth(
        self,
        caller_id: int,
        ok: bool,
        username: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        if ok:
            await self.audit.auth_success(caller_id, username)
            return
        logger.warning("Unauthorized access attempt: caller=%s username=%s reason=%s", caller_id, username, reason)
        await self.audit.auth_failure(caller_id, username, reason)
        self.metrics.increment_counter("auth_failures")

    # ---------------------------
    # Tool calls
    # ---------------------------

    async def invoke_tool(
        self,
        caller_id: int,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> ToolOutcome:
        try:
            executed = await self.executor.execute(caller_id, tool_name, arguments)
        except GatewayError as e:
            return ToolOutcome(success=False, reply=self._reply_for(tool_name, e), code=e.code)
        except Exception as e:
            await self._unexpected(caller_id, "tool", e)
            return ToolOutcome(success=False, reply=INTERNAL_REPLY, code=RADAR_E_INTERNAL)

        result = executed.result
        truncated = False
        if isinstance(result, str):
            result, truncated = truncate_tool_result(result)
        return ToolOutcome(
            success=True,
            result=result,
            code=None,
            duration_ms=executed.duration_ms,
            truncated=truncated,
        )

    @staticmethod
    def _reply_for(tool_name: str, e: GatewayError) -> str:
        if e.code == RADAR_E_TOOL_TIMEOUT:
            return TIMEOUT_REPLY
        if e.code == RADAR_E_PERMISSION_DENIED:
            return permission_reply(tool_name)
        if e.code == RADAR_E_VALIDATION_FAILED:
            return VALIDATION_REPLY
        if e.code == RADAR_E_TOOL_UNKNOWN:
            return f"Unknown tool: {tool_name}"
        return tool_error_reply(tool_name, e.message)

    # ---------------------------
    # Introspection
    # ---------------------------

    def stats(self) -> Dict[str, Any]:
        return {
            "metrics": self.metrics.snapshot(),
            "rate_limit": self.admission.stats(),
            "permission_cache": self.permissions.cache_stats(),
            "audit": {
                "pending": self.audit.pending,
                "written": self.audit.written,
                "write_failures": self.audit.write_failures,
                "dropped": self.audit.dropped,
            },
            "alerts_fired": [a.alert_type for a in self.monitor.fired_alerts],
            "tools": self.executor.tool_names(),
            "store_lockdown": self.store.circuit.is_lockdown_active(),
        }
