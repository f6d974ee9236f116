"""Append-only audit log for the Radar gateway.

Every stage of the pipeline reports its outcome here. Writes are best-effort
and never raise to the caller: a missing audit row is acceptable, a crashed
pipeline is not.

Events are first appended to a bounded in-memory ring buffer and then drained
into the store in creation order. When a store write fails, the remaining
events stay queued and no write is attempted until a backoff window (1s
doubling to 30s) has passed. ``record()`` only enqueues and, at most, starts
one flush task; the caller never waits on the store. ``start()`` runs a
background flusher that retries on the backoff schedule. Read queries drain
the queue first so they see their own writes. If the buffer overflows, the
oldest event is dropped and a warning is logged.

Note: this is not exactly-once delivery. A process crash loses whatever is
still queued.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Union

logger = logging.getLogger("radar_gateway.audit")


class AuditEventType(str, Enum):
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    TOOL_EXECUTION = "tool_execution"
    TOOL_TIMEOUT = "tool_timeout"
    TOOL_ERROR = "tool_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    VALIDATION_FAILURE = "validation_failure"
    PERMISSION_DENIED = "permission_denied"
    ERROR = "error"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self.value]


_SEVERITY_RANK = {"info": 0, "warning": 1, "error": 2, "critical": 3}


def severities_at_least(min_severity: Union[str, AuditSeverity]) -> List[str]:
    floor = AuditSeverity(min_severity).rank
    return [s.value for s in AuditSeverity if s.rank >= floor]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditEvent:
    event_type: AuditEventType
    caller_id: Optional[int]
    event_data: Dict[str, Any]
    severity: AuditSeverity
    created_at: datetime = field(default_factory=_now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "caller_id": self.caller_id,
            "event_data": dict(self.event_data),
            "severity": self.severity.value,
            "created_at": self.created_at.isoformat(),
        }


class AuditWriter:
    """Non-blocking audit sink in front of an audit store.

    The store must provide ``insert_audit_event(event)``,
    ``purge_audit_events(before_iso)``,
    ``query_user_audit_trail(caller_id, since_iso, limit)`` and
    ``query_security_incidents(since_iso, severities, limit)``.
    """

    def __init__(
        self,
        store: Any,
        buffer_size: int = 1000,
        retention_days: int = 90,
        flush_on_record: bool = True,
        retry_initial_seconds: float = 1.0,
        retry_max_seconds: float = 30.0,
        now: Callable[[], datetime] = _now_utc,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.buffer_size = max(1, int(buffer_size))
        self.retention_days = int(retention_days)
        self.flush_on_record = flush_on_record
        self._retry_initial = float(retry_initial_seconds)
        self._retry_max = float(retry_max_seconds)
        self._now = now
        self._clock = clock

        self._lock = threading.Lock()
        self._buffer: Deque[AuditEvent] = deque()
        self._flushing = False
        self._flush_task: Optional[asyncio.Task] = None
        self._retry_delay = 0.0
        self._retry_at = 0.0
        self._task: Optional[asyncio.Task] = None

        self.written = 0
        self.write_failures = 0
        self.dropped = 0

    @classmethod
    def from_config(cls, config: Any, store: Any, **kwargs: Any) -> "AuditWriter":
        return cls(
            store,
            buffer_size=config.audit_buffer_size,
            retention_days=config.audit_retention_days,
            **kwargs,
        )

    # ---------------------------
    # Writing
    # ---------------------------

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def _enqueue(self, event: AuditEvent) -> None:
        with self._lock:
            if len(self._buffer) >= self.buffer_size:
                lost = self._buffer.popleft()
                self.dropped += 1
                logger.warning(
                    "Audit buffer full (%d); dropping oldest %s event",
                    self.buffer_size,
                    lost.event_type.value,
                )
            self._buffer.append(event)

    def _in_backoff(self) -> bool:
        return self._retry_delay > 0 and self._clock() < self._retry_at

    def _note_failure(self) -> None:
        if self._retry_delay <= 0:
            self._retry_delay = self._retry_initial
        else:
            self._retry_delay = min(self._retry_delay * 2, self._retry_max)
        self._retry_at = self._clock() + self._retry_delay

    def _schedule_flush(self) -> None:
        """Start one flush task on the running loop unless one is in flight."""
        if self._in_backoff():
            return
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._flush_task = loop.create_task(self.flush())

    async def flush(self, ignore_backoff: bool = False) -> int:
        """Drain queued events into the store. Returns how many were written.

        Only one drain runs at a time; a concurrent call returns 0 at once.
        The backoff window is checked before every write.
        """
        if self._flushing:
            return 0
        self._flushing = True
        written = 0
        try:
            while ignore_backoff or not self._in_backoff():
                with self._lock:
                    if not self._buffer:
                        break
                    event = self._buffer[0]
                try:
                    await asyncio.to_thread(self.store.insert_audit_event, event)
                except Exception as e:
                    self.write_failures += 1
                    self._note_failure()
                    logger.error(
                        "Failed to write audit event %s for caller %s (%d queued): %s",
                        event.event_type.value,
                        event.caller_id,
                        self.pending,
                        e,
                    )
                    break
                with self._lock:
                    if self._buffer and self._buffer[0] is event:
                        self._buffer.popleft()
                self._retry_delay = 0.0
                self.written += 1
                written += 1
        finally:
            self._flushing = False
        return written

    async def drain(self) -> int:
        """Wait for an in-flight flush, then flush whatever is still queued."""
        task = self._flush_task
        if task is not None and not task.done():
            await task
        return await self.flush()

    async def record(
        self,
        event_type: Union[str, AuditEventType],
        caller_id: Optional[int] = None,
        event_data: Optional[Dict[str, Any]] = None,
        severity: Union[str, AuditSeverity] = AuditSeverity.INFO,
    ) -> None:
        """Append one audit event. Never raises and never waits on the store."""
        try:
            event = AuditEvent(
                event_type=AuditEventType(event_type),
                caller_id=caller_id,
                event_data=dict(event_data or {}),
                severity=AuditSeverity(severity),
                created_at=self._now(),
            )
            self._enqueue(event)
            if self.flush_on_record:
                self._schedule_flush()
        except Exception as e:
            logger.error("Exception recording audit event %s for caller %s: %s", event_type, caller_id, e)

    # ---------------------------
    # Background flusher
    # ---------------------------

    async def _run(self, poll_seconds: float) -> None:
        while True:
            try:
                if self._in_backoff():
                    await asyncio.sleep(max(0.0, self._retry_at - self._clock()))
                else:
                    await asyncio.sleep(poll_seconds)
                if self.pending:
                    await self.flush()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Audit flusher error: %s", e)

    def start(self, poll_seconds: float = 1.0) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run(poll_seconds))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        flushing = self._flush_task
        if flushing is not None and not flushing.done():
            await flushing
        # Final best-effort drain, one attempt regardless of backoff.
        await self.flush(ignore_backoff=True)

    # ---------------------------
    # Convenience recorders
    # ---------------------------

    async def auth_success(self, caller_id: int, username: Optional[str] = None) -> None:
        await self.record(AuditEventType.AUTH_SUCCESS, caller_id, {"username": username}, AuditSeverity.INFO)

    async def auth_failure(self, caller_id: int, username: Optional[str] = None, reason: Optional[str] = None) -> None:
        await self.record(
            AuditEventType.AUTH_FAILURE, caller_id, {"username": username, "reason": reason}, AuditSeverity.WARNING
        )

    async def message_received(self, caller_id: int, message_length: int) -> None:
        await self.record(AuditEventType.MESSAGE_RECEIVED, caller_id, {"messageLength": message_length})

    async def message_sent(self, caller_id: int, message_length: int) -> None:
        await self.record(AuditEventType.MESSAGE_SENT, caller_id, {"messageLength": message_length})

    async def tool_execution(self, caller_id: int, tool_name: str, duration_ms: int, success: bool) -> None:
        await self.record(
            AuditEventType.TOOL_EXECUTION,
            caller_id,
            {"toolName": tool_name, "durationMs": duration_ms, "success": success},
            AuditSeverity.INFO if success else AuditSeverity.ERROR,
        )

    async def tool_timeout(self, caller_id: int, tool_name: str, timeout_ms: int) -> None:
        await self.record(
            AuditEventType.TOOL_TIMEOUT, caller_id, {"toolName": tool_name, "timeoutMs": timeout_ms}, AuditSeverity.ERROR
        )

    async def tool_error(self, caller_id: int, tool_name: str, error_message: str) -> None:
        await self.record(
            AuditEventType.TOOL_ERROR,
            caller_id,
            {"toolName": tool_name, "errorMessage": error_message},
            AuditSeverity.ERROR,
        )

    async def rate_limit_exceeded(self, caller_id: int, limit_type: str, remaining_seconds: int) -> None:
        await self.record(
            AuditEventType.RATE_LIMIT_EXCEEDED,
            caller_id,
            {"limitType": limit_type, "remainingSeconds": remaining_seconds},
            AuditSeverity.WARNING,
        )

    async def validation_failure(self, caller_id: Optional[int], violations: List[str], message_length: int) -> None:
        await self.record(
            AuditEventType.VALIDATION_FAILURE,
            caller_id,
            {"violations": list(violations), "messageLength": message_length},
            AuditSeverity.WARNING,
        )

    async def permission_denied(self, caller_id: int, tool_name: str) -> None:
        await self.record(AuditEventType.PERMISSION_DENIED, caller_id, {"toolName": tool_name}, AuditSeverity.WARNING)

    async def error(self, caller_id: Optional[int], error_message: str, error_stack: Optional[str] = None) -> None:
        await self.record(
            AuditEventType.ERROR, caller_id, {"errorMessage": error_message, "errorStack": error_stack}, AuditSeverity.ERROR
        )

    # ---------------------------
    # Retention / maintenance
    # ---------------------------

    async def purge_older_than(self, days: Optional[int] = None) -> int:
        """Delete audit rows older than ``days`` (default: retention_days)."""
        keep = int(days) if days is not None else self.retention_days
        if keep < 0:
            raise ValueError("days must be non-negative")
        await self.drain()
        cutoff = (self._now() - timedelta(days=keep)).isoformat()
        deleted = await asyncio.to_thread(self.store.purge_audit_events, cutoff)
        logger.info("Purged %d audit events older than %d days", deleted, keep)
        return int(deleted)

    async def user_audit_trail(self, caller_id: int, days_back: int = 7, limit: int = 100) -> List[Dict[str, Any]]:
        since = (self._now() - timedelta(days=days_back)).isoformat()
        try:
            await self.drain()
            return await asyncio.to_thread(self.store.query_user_audit_trail, caller_id, since, int(limit))
        except Exception as e:
            logger.error("Failed to fetch audit trail for caller %s: %s", caller_id, e)
            return []

    async def security_incidents(
        self,
        hours_back: int = 24,
        min_severity: Union[str, AuditSeverity] = AuditSeverity.WARNING,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        since = (self._now() - timedelta(hours=hours_back)).isoformat()
        try:
            severities = severities_at_least(min_severity)
            await self.drain()
            return await asyncio.to_thread(self.store.query_security_incidents, since, severities, int(limit))
        except Exception as e:
            logger.error("Failed to fetch security incidents: %s", e)
            return []
