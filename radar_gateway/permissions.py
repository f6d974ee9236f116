"""Per-(caller, tool) permission gate.

Default policy: DENY. A caller may use a tool only if the persisted allowlist
holds a row for the pair with ``is_allowed`` set and no ``revoked_at``.

Decisions (allow and deny alike) are cached in memory for a short TTL.
``grant`` / ``revoke`` write through to the store and then drop the cache
entry, so the next check re-reads authoritative state.

Fail-closed behavior:
    Any store error (unreachable, locked, malformed row) makes ``check``
    return False. The error is logged, never raised, and never cached.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

logger = logging.getLogger("radar_gateway.permissions")


@dataclass
class PermissionRecord:
    """One row of the persisted allowlist."""

    caller_id: int
    tool_name: str
    is_allowed: bool
    granted_at: Optional[str] = None
    granted_by: Optional[int] = None
    revoked_at: Optional[str] = None
    revoked_by: Optional[int] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.is_allowed is True and self.revoked_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "caller_id": self.caller_id,
            "tool_name": self.tool_name,
            "is_allowed": self.is_allowed,
            "granted_at": self.granted_at,
            "granted_by": self.granted_by,
            "revoked_at": self.revoked_at,
            "revoked_by": self.revoked_by,
            "notes": self.notes,
        }


class AllowlistStore(Protocol):
    """The persisted allowlist. Calls may block; the gate runs them off-loop."""

    def get_permission(self, caller_id: int, tool_name: str) -> Optional[PermissionRecord]:
        ...

    def upsert_grant(
        self, caller_id: int, tool_name: str, granted_by: Optional[int] = None, notes: Optional[str] = None
    ) -> None:
        ...

    def revoke(self, caller_id: int, tool_name: str, revoked_by: Optional[int] = None) -> int:
        ...

    def list_allowed_tools(self, caller_id: int) -> List[str]:
        ...


@dataclass
class PermissionCacheEntry:
    allowed: bool
    cached_at: float


class PermissionGate:
    def __init__(
        self,
        store: AllowlistStore,
        ttl_seconds: float = 60.0,
        max_entries: int = 50000,
        audit: Optional[Any] = None,
        metrics: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self.audit = audit
        self.metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: "OrderedDict[Tuple[int, str], PermissionCacheEntry]" = OrderedDict()
        # Bumped on every invalidation; a lookup that raced with one is not cached.
        self._invalidations = 0
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_config(cls, config: Any, store: AllowlistStore, **kwargs: Any) -> "PermissionGate":
        return cls(
            store,
            ttl_seconds=config.permission_cache_ttl_seconds,
            max_entries=config.permission_cache_max_entries,
            **kwargs,
        )

    # ---------------------------
    # Cache
    # ---------------------------

    def _cached(self, key: Tuple[int, str]) -> Optional[bool]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._clock() - entry.cached_at >= self.ttl_seconds:
            # Expired entries are treated as absent.
            return None
        return entry.allowed

    def _put(self, key: Tuple[int, str], allowed: bool) -> None:
        self._cache[key] = PermissionCacheEntry(allowed=allowed, cached_at=self._clock())
        self._cache.move_to_end(key)
        while len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)

    def _invalidate(self, caller_id: int, tool_name: str) -> None:
        with self._lock:
            self._invalidations += 1
            self._cache.pop((caller_id, tool_name), None)

    def clear_cache(self) -> None:
        with self._lock:
            self._invalidations += 1
            self._cache.clear()
        logger.info("Tool permission cache cleared")

    def cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "size": len(self._cache),
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": (self.hits / total) if total else None,
            }

    # ---------------------------
    # Decision
    # ---------------------------

    async def _lookup(self, caller_id: int, tool_name: str) -> bool:
        key = (caller_id, tool_name)
        with self._lock:
            cached = self._cached(key)
            if cached is not None:
                self.hits += 1
                logger.debug("Tool permission cache hit: caller=%s tool=%s allowed=%s", caller_id, tool_name, cached)
                return cached
            self.misses += 1
            epoch = self._invalidations

        try:
            record = await asyncio.to_thread(self.store.get_permission, caller_id, tool_name)
            allowed = bool(record is not None and record.is_active)
        except Exception as e:
            logger.error("Error checking tool permission (caller=%s tool=%s); denying: %s", caller_id, tool_name, e)
            if self.metrics is not None:
                self.metrics.increment_counter("errors", {"component": "permissions"})
            return False

        with self._lock:
            if self._invalidations == epoch:
                self._put(key, allowed)
        logger.debug("Tool permission checked: caller=%s tool=%s allowed=%s", caller_id, tool_name, allowed)
        return allowed

    async def check(self, caller_id: int, tool_name: str) -> bool:
        """Return True only if the caller is explicitly allowed to use the tool."""
        try:
            allowed = await self._lookup(caller_id, tool_name)
        except Exception as e:
            logger.error("Exception checking tool permission (caller=%s tool=%s); denying: %s", caller_id, tool_name, e)
            allowed = False

        if not allowed:
            logger.warning("Tool permission denied: caller=%s tool=%s", caller_id, tool_name)
            if self.metrics is not None:
                self.metrics.increment_counter("permission_denials", {"tool": tool_name})
            if self.audit is not None:
                await self.audit.permission_denied(caller_id, tool_name)
        return allowed

    # ---------------------------
    # Administration (not authenticated here)
    # ---------------------------

    async def grant(
        self,
        caller_id: int,
        tool_name: str,
        granted_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> bool:
        try:
            await asyncio.to_thread(self.store.upsert_grant, caller_id, tool_name, granted_by, notes)
        except Exception as e:
            logger.error("Error granting tool permission (caller=%s tool=%s): %s", caller_id, tool_name, e)
            return False
        finally:
            self._invalidate(caller_id, tool_name)
        logger.info("Tool permission granted: caller=%s tool=%s by=%s", caller_id, tool_name, granted_by)
        return True

    async def revoke(self, caller_id: int, tool_name: str, revoked_by: Optional[int] = None) -> bool:
        try:
            await asyncio.to_thread(self.store.revoke, caller_id, tool_name, revoked_by)
        except Exception as e:
            logger.error("Error revoking tool permission (caller=%s tool=%s): %s", caller_id, tool_name, e)
            return False
        finally:
            self._invalidate(caller_id, tool_name)
        logger.info("Tool permission revoked: caller=%s tool=%s by=%s", caller_id, tool_name, revoked_by)
        return True

    async def bulk_grant(self, caller_id: int, tool_names: Iterable[str], granted_by: Optional[int] = None) -> int:
        names = list(tool_names)
        granted = 0
        for name in names:
            if await self.grant(caller_id, name, granted_by, "Bulk grant"):
                granted += 1
        logger.info("Bulk tool permission grant: caller=%s requested=%d granted=%d", caller_id, len(names), granted)
        return granted

    async def list_permissions(self, caller_id: int) -> List[str]:
        """Tool names the caller currently holds an active grant for."""
        try:
            return await asyncio.to_thread(self.store.list_allowed_tools, caller_id)
        except Exception as e:
            logger.error("Error fetching tool permissions for caller %s: %s", caller_id, e)
            return []
