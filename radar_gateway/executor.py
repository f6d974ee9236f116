"""Bounded tool execution.

Every tool invocation runs under a hard wall-clock deadline (30s by default).
A deadline miss raises ``ToolTimeoutError``, which is kept distinct from the
tool's own failures so that metrics and alerts can tell infrastructure
slowness apart from tool bugs.

Flow for one call (``BoundedExecutor.execute``):

    tool-argument validation -> permission check -> run with deadline
        -> audit + metrics for the outcome

On timeout the abandoned task is cancelled by default. With
``cancel_on_timeout=False`` it keeps running in the background and its
eventual exception is retrieved so the loop never reports it as unhandled.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .content_gate import ContentGate, sanitize_output
from .errors import (
    RADAR_E_PERMISSION_DENIED,
    RADAR_E_TOOL_ERROR,
    RADAR_E_TOOL_UNKNOWN,
    RADAR_E_VALIDATION_FAILED,
    ToolTimeoutError,
    gateway_error,
)

logger = logging.getLogger("radar_gateway.executor")

DEFAULT_TOOL_TIMEOUT_MS = 30000
MAX_TOOL_RESULT_LENGTH = 10000
MAX_ERROR_MESSAGE_LENGTH = 500

TRUNCATION_NOTE = "\n\n[... Result truncated due to size ...]"

Operation = Union[Awaitable[Any], Callable[[], Awaitable[Any]]]


def _retrieve_result(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned operation finished with %s: %s", type(exc).__name__, exc)


async def run_with_deadline(
    operation: Operation,
    timeout_ms: int,
    *,
    cancel_on_timeout: bool = True,
    message: str = "Operation timed out",
) -> Any:
    """Await ``operation`` for at most ``timeout_ms``.

    ``operation`` is an awaitable or a zero-argument callable returning one.
    Its result or exception propagates unchanged if it settles in time.
    """
    if callable(operation):
        operation = operation()
    task = asyncio.ensure_future(operation)
    try:
        done, _ = await asyncio.wait({task}, timeout=max(0, timeout_ms) / 1000.0)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        return task.result()

    if cancel_on_timeout:
        task.cancel()
    task.add_done_callback(_retrieve_result)
    raise ToolTimeoutError(f"{message} ({timeout_ms}ms)", timeout_ms)


async def run_with_deadline_and_retry(
    factory: Callable[[], Awaitable[Any]],
    timeout_ms: int,
    max_retries: int = 3,
    retry_delay_ms: int = 1000,
    *,
    cancel_on_timeout: bool = True,
) -> Any:
    """Retry ``factory()`` on timeout only; any other failure is raised at once."""
    last: Optional[ToolTimeoutError] = None
    attempts = max(0, int(max_retries)) + 1
    for attempt in range(attempts):
        try:
            return await run_with_deadline(
                factory,
                timeout_ms,
                cancel_on_timeout=cancel_on_timeout,
                message=f"Attempt {attempt + 1}/{attempts} timed out",
            )
        except ToolTimeoutError as e:
            last = e
            logger.warning("Operation timed out, retrying (attempt %d/%d, timeout=%dms)", attempt + 1, attempts, timeout_ms)
            if attempt < attempts - 1:
                await asyncio.sleep(retry_delay_ms / 1000.0)
    assert last is not None
    raise last


def truncate_tool_result(text: str, max_length: int = MAX_TOOL_RESULT_LENGTH) -> Tuple[str, bool]:
    """Returns (text, was_truncated)."""
    if len(text) <= max_length:
        return text, False
    truncated = text[: max(0, max_length - 100)] + TRUNCATION_NOTE
    logger.warning("Tool result truncated: original_length=%d truncated_length=%d", len(text), len(truncated))
    return truncated, True


# ---------------------------
# Connectors
# ---------------------------

class ToolConnector:
    """
    Base class for tool connectors.

    The executor owns deadlines, permissions and reporting; a connector only
    performs the call.
    """

    def __init__(self, tool_name: str):
        self.tool_name = tool_name

    async def invoke(self, arguments: Dict[str, Any]) -> Tuple[bool, Any, Optional[str]]:
        """
        Invoke the tool.

        Returns (success, result, error_message).
        """
        raise NotImplementedError


class CallableToolConnector(ToolConnector):
    """Wrap an ``async def fn(arguments) -> result``. Exceptions count as failures."""

    def __init__(self, tool_name: str, fn: Callable[[Dict[str, Any]], Awaitable[Any]]):
        super().__init__(tool_name)
        self._fn = fn

    async def invoke(self, arguments: Dict[str, Any]) -> Tuple[bool, Any, Optional[str]]:
        return True, await self._fn(arguments), None


class ToolInvocationError(RuntimeError):
    """A connector reported failure without raising."""


@dataclass
class ToolResult:
    tool_name: str
    result: Any
    duration_ms: int


class BoundedExecutor:
    def __init__(
        self,
        permissions: Any,
        audit: Optional[Any] = None,
        metrics: Optional[Any] = None,
        content_gate: Optional[ContentGate] = None,
        timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS,
        cancel_on_timeout: bool = True,
    ):
        self.permissions = permissions
        self.audit = audit
        self.metrics = metrics
        self.content_gate = content_gate or ContentGate()
        self.timeout_ms = int(timeout_ms)
        self.cancel_on_timeout = bool(cancel_on_timeout)
        self._tools: Dict[str, ToolConnector] = {}

    @classmethod
    def from_config(cls, config: Any, permissions: Any, **kwargs: Any) -> "BoundedExecutor":
        return cls(
            permissions,
            timeout_ms=config.tool_timeout_ms,
            cancel_on_timeout=config.cancel_on_timeout,
            **kwargs,
        )

    def register(self, connector: ToolConnector) -> None:
        self._tools[connector.tool_name] = connector
        logger.info("Registered tool connector: %s", connector.tool_name)

    def tool_names(self) -> List[str]:
        return sorted(self._tools)

    def _count(self, name: str, tags: Optional[Dict[str, str]] = None) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(name, tags)

    def _timing(self, tool_name: str, duration_ms: int, success: bool) -> None:
        if self.metrics is not None:
            self.metrics.record_timing(
                "tool_execution_duration",
                duration_ms,
                {"toolName": tool_name, "success": "true" if success else "false"},
            )

    async def execute(self, caller_id: int, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        arguments = dict(arguments or {})

        check = self.content_gate.validate_tool_input(arguments)
        if not check.is_valid:
            self._count("validation_failures", {"kind": "tool_input"})
            if self.audit is not None:
                await self.audit.validation_failure(caller_id, check.violations, len(check.sanitized))
            raise gateway_error(
                RADAR_E_VALIDATION_FAILED,
                "Tool input rejected",
                http_status=400,
                tool_name=tool_name,
                violations=check.violations,
            )

        # The gate records permission_denied itself.
        if not await self.permissions.check(caller_id, tool_name):
            raise gateway_error(
                RADAR_E_PERMISSION_DENIED,
                f"Permission denied for tool {tool_name}",
                http_status=403,
                tool_name=tool_name,
            )

        connector = self._tools.get(tool_name)
        if connector is None:
            raise gateway_error(RADAR_E_TOOL_UNKNOWN, f"Unknown tool: {tool_name}", http_status=404, tool_name=tool_name)

        async def _call() -> Any:
            ok, result, error = await connector.invoke(arguments)
            if not ok:
                raise ToolInvocationError(error or "TOOL_ERROR")
            return result

        logger.info("Executing tool %s for caller %s", tool_name, caller_id)
        start = time.monotonic()
        try:
            result = await run_with_deadline(
                _call,
                self.timeout_ms,
                cancel_on_timeout=self.cancel_on_timeout,
                message=f"Tool {tool_name} timed out",
            )
        except ToolTimeoutError:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.error("Tool %s timed out after %dms for caller %s", tool_name, self.timeout_ms, caller_id)
            if self.audit is not None:
                await self.audit.tool_timeout(caller_id, tool_name, self.timeout_ms)
                await self.audit.tool_execution(caller_id, tool_name, duration_ms, False)
            self._count("tool_timeouts", {"toolName": tool_name})
            self._timing(tool_name, duration_ms, False)
            raise
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            error_message = str(e) or type(e).__name__
            logger.error("Tool %s failed for caller %s: %s", tool_name, caller_id, error_message)
            if self.audit is not None:
                await self.audit.tool_error(caller_id, tool_name, error_message)
                await self.audit.tool_execution(caller_id, tool_name, duration_ms, False)
            self._timing(tool_name, duration_ms, False)
            raise gateway_error(
                RADAR_E_TOOL_ERROR,
                sanitize_output(error_message, MAX_ERROR_MESSAGE_LENGTH).strip(),
                http_status=502,
                tool_name=tool_name,
            ) from e

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Tool %s executed successfully in %dms", tool_name, duration_ms)
        if self.audit is not None:
            await self.audit.tool_execution(caller_id, tool_name, duration_ms, True)
        self._timing(tool_name, duration_ms, True)
        return ToolResult(tool_name=tool_name, result=result, duration_ms=duration_ms)
