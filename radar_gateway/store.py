"""
SQLite-backed store for the persisted allowlist and the audit log.

Tables:
- tool_permissions: one row per (caller_id, tool_name), the allowlist source
  of truth read by the permission gate.
- audit_log: append-only audit events written by the audit writer.

Every operation goes through ``_db()`` so that a slow or failing database
trips the circuit breaker; while it is open, calls raise
``StorageLockdownError`` without touching SQLite.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .audit_log import AuditEvent, AuditEventType, AuditSeverity
from .lockdown import DbCircuitBreaker
from .permissions import PermissionRecord

logger = logging.getLogger("radar_gateway.store")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_EVENT_TYPES_SQL = ", ".join(f"'{t.value}'" for t in AuditEventType)
_SEVERITIES_SQL = ", ".join(f"'{s.value}'" for s in AuditSeverity)


class GatewayStore:
    """
    Persistent storage for gateway state.

    Storage Properties:
    - WAL mode so audit inserts don't block allowlist reads
    - A fresh connection per operation; safe to call from worker threads
    """

    def __init__(self, db_path: str = "radar_gateway.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = db_path
        self.circuit = circuit or DbCircuitBreaker()
        self._init_db()

    @contextmanager
    def _db(self, op_name: str):
        """DB connection wrapper with circuit breaker (fail-closed)."""
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
            )
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
            elapsed_ms = (time.monotonic() - start) * 1000.0
            if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
                logger.warning("Store op %s took %.0fms", op_name, elapsed_ms)
                self.circuit.record_latency(elapsed_ms)
            else:
                self.circuit.record_success()
        except sqlite3.OperationalError as e:
            # Locked/busy/unreachable database counts against the breaker.
            self.circuit.record_failure(e)
            raise

    def _init_db(self):
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS tool_permissions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                caller_id INTEGER NOT NULL,
                tool_name TEXT NOT NULL,
                is_allowed BOOLEAN NOT NULL DEFAULT 0,
                granted_at TEXT,
                granted_by INTEGER,
                revoked_at TEXT,
                revoked_by INTEGER,
                notes TEXT,
                UNIQUE (caller_id, tool_name)
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tool_permissions_tool ON tool_permissions(tool_name)")

            conn.execute(f"""
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL CHECK (event_type IN ({_EVENT_TYPES_SQL})),
                caller_id INTEGER,
                event_data TEXT NOT NULL DEFAULT '{{}}',
                severity TEXT NOT NULL CHECK (severity IN ({_SEVERITIES_SQL})),
                created_at TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_caller ON audit_log(caller_id, created_at DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_severity ON audit_log(severity, created_at DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_created ON audit_log(created_at DESC)")

    # ---------------------------
    # Allowlist
    # ---------------------------

    @staticmethod
    def _row_to_permission(row: Any) -> PermissionRecord:
        caller_id, tool_name, is_allowed, granted_at, granted_by, revoked_at, revoked_by, notes = row
        if is_allowed not in (0, 1, True, False):
            raise ValueError(f"malformed is_allowed value: {is_allowed!r}")
        return PermissionRecord(
            caller_id=int(caller_id),
            tool_name=str(tool_name),
            is_allowed=bool(is_allowed),
            granted_at=granted_at,
            granted_by=granted_by,
            revoked_at=revoked_at,
            revoked_by=revoked_by,
            notes=notes,
        )

    def get_permission(self, caller_id: int, tool_name: str) -> Optional[PermissionRecord]:
        with self._db("get_permission") as conn:
            row = conn.execute(
                """
                SELECT caller_id, tool_name, is_allowed, granted_at, granted_by, revoked_at, revoked_by, notes
                FROM tool_permissions WHERE caller_id = ? AND tool_name = ?
                """,
                (int(caller_id), tool_name),
            ).fetchone()
        return self._row_to_permission(row) if row else None

    def upsert_grant(
        self,
        caller_id: int,
        tool_name: str,
        granted_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> None:
        with self._db("upsert_grant") as conn:
            conn.execute(
                """
                INSERT INTO tool_permissions
                (caller_id, tool_name, is_allowed, granted_at, granted_by, revoked_at, revoked_by, notes)
                VALUES (?, ?, 1, ?, ?, NULL, NULL, ?)
                ON CONFLICT (caller_id, tool_name) DO UPDATE SET
                    is_allowed = 1,
                    granted_at = excluded.granted_at,
                    granted_by = excluded.granted_by,
                    revoked_at = NULL,
                    revoked_by = NULL,
                    notes = excluded.notes
                """,
                (int(caller_id), tool_name, _now_iso(), granted_by, notes),
            )

    def revoke(self, caller_id: int, tool_name: str, revoked_by: Optional[int] = None) -> int:
        """Mark a permission revoked. Returns the number of rows touched."""
        with self._db("revoke") as conn:
            cur = conn.execute(
                """
                UPDATE tool_permissions SET is_allowed = 0, revoked_at = ?, revoked_by = ?
                WHERE caller_id = ? AND tool_name = ?
                """,
                (_now_iso(), revoked_by, int(caller_id), tool_name),
            )
            return int(cur.rowcount or 0)

    def list_permissions(self, caller_id: int) -> List[PermissionRecord]:
        with self._db("list_permissions") as conn:
            rows = conn.execute(
                """
                SELECT caller_id, tool_name, is_allowed, granted_at, granted_by, revoked_at, revoked_by, notes
                FROM tool_permissions WHERE caller_id = ? ORDER BY tool_name
                """,
                (int(caller_id),),
            ).fetchall()
        return [self._row_to_permission(r) for r in rows]

    def list_allowed_tools(self, caller_id: int) -> List[str]:
        with self._db("list_allowed_tools") as conn:
            rows = conn.execute(
                """
                SELECT tool_name FROM tool_permissions
                WHERE caller_id = ? AND is_allowed = 1 AND revoked_at IS NULL
                ORDER BY tool_name
                """,
                (int(caller_id),),
            ).fetchall()
        return [str(r[0]) for r in rows]

    # ---------------------------
    # Audit log
    # ---------------------------

    def insert_audit_event(self, event: AuditEvent) -> None:
        with self._db("insert_audit_event") as conn:
            conn.execute(
                """
                INSERT INTO audit_log (event_type, caller_id, event_data, severity, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.event_type.value,
                    event.caller_id,
                    json.dumps(event.event_data, default=str, sort_keys=True),
                    event.severity.value,
                    event.created_at.isoformat(),
                ),
            )

    def purge_audit_events(self, before_iso: str) -> int:
        with self._db("purge_audit_events") as conn:
            cur = conn.execute("DELETE FROM audit_log WHERE created_at < ?", (before_iso,))
            return int(cur.rowcount or 0)

    @staticmethod
    def _audit_rows(rows: List[Any]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for row_id, event_type, caller_id, event_data, severity, created_at in rows:
            try:
                data = json.loads(event_data) if event_data else {}
            except ValueError:
                data = {"_raw": event_data}
            out.append({
                "id": int(row_id),
                "event_type": event_type,
                "caller_id": caller_id,
                "event_data": data,
                "severity": severity,
                "created_at": created_at,
            })
        return out

    def query_user_audit_trail(self, caller_id: int, since_iso: str, limit: int) -> List[Dict[str, Any]]:
        with self._db("query_user_audit_trail") as conn:
            rows = conn.execute(
                """
                SELECT id, event_type, caller_id, event_data, severity, created_at FROM audit_log
                WHERE caller_id = ? AND created_at > ?
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (int(caller_id), since_iso, int(limit)),
            ).fetchall()
        return self._audit_rows(rows)

    def query_security_incidents(self, since_iso: str, severities: List[str], limit: int) -> List[Dict[str, Any]]:
        if not severities:
            return []
        placeholders = ", ".join("?" for _ in severities)
        with self._db("query_security_incidents") as conn:
            rows = conn.execute(
                f"""
                SELECT id, event_type, caller_id, event_data, severity, created_at FROM audit_log
                WHERE created_at > ? AND severity IN ({placeholders})
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (since_iso, *severities, int(limit)),
            ).fetchall()
        return self._audit_rows(rows)

    def count_audit_events(self, event_type: Optional[str] = None) -> int:
        with self._db("count_audit_events") as conn:
            if event_type is None:
                row = conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM audit_log WHERE event_type = ?", (event_type,)).fetchone()
        return int(row[0])
