"""Store health guard for the allowlist and the audit log.

Both the permission gate and the audit writer read and write one SQLite
file. ``DbCircuitBreaker`` counts failed or slow store calls. Once it trips,
every store call raises ``StorageLockdownError`` until the window expires.
The permission gate turns that into a denial, and the audit writer keeps its
events buffered and retries after the window.

A single call slower than ``latency_threshold_ms`` trips the breaker at once.
Otherwise it trips on the ``failure_threshold``-th failure. Each success takes
one failure off the count.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import _get_float, _get_int


class StorageLockdownError(RuntimeError):
    """The store is in lockdown; callers should not wait on it."""


@dataclass
class StoreCircuitConfig:
    """Thresholds for ``DbCircuitBreaker``.

    Read from RADAR_DB_LATENCY_THRESHOLD_MS, RADAR_DB_FAILURE_THRESHOLD,
    RADAR_DB_LOCKDOWN_SECONDS and RADAR_DB_CONNECT_TIMEOUT_SECONDS.
    """

    latency_threshold_ms: int = 1000
    failure_threshold: int = 3
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "StoreCircuitConfig":
        latency = _get_int("RADAR_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms)
        timeout = _get_float("RADAR_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)
        return cls(
            # A negative latency limit would trip on every call.
            latency_threshold_ms=latency if latency >= 0 else cls.latency_threshold_ms,
            failure_threshold=max(1, _get_int("RADAR_DB_FAILURE_THRESHOLD", cls.failure_threshold)),
            lockdown_seconds=max(1, _get_int("RADAR_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)),
            connect_timeout_seconds=timeout if timeout > 0 else cls.connect_timeout_seconds,
        )


class DbCircuitBreaker:
    """A simple circuit breaker for store operations.

    Store calls run on worker threads (``asyncio.to_thread``), so state
    changes take a lock.
    """

    def __init__(
        self,
        config: Optional[StoreCircuitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or StoreCircuitConfig.from_env()
        self._clock = clock
        self._lock = threading.Lock()
        self._failure_count = 0
        self._lockdown_until: float = 0.0

    def is_lockdown_active(self) -> bool:
        return self._clock() < self._lockdown_until

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StorageLockdownError("LOCKDOWN_ACTIVE")

    def _trip(self) -> None:
        self._lockdown_until = self._clock() + float(self.config.lockdown_seconds)
        # Keep failure_count at threshold to avoid immediate decay confusion.
        self._failure_count = self.config.failure_threshold

    def record_success(self) -> None:
        with self._lock:
            # Decay failures slowly on success.
            if self._failure_count > 0:
                self._failure_count -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms >= float(self.config.latency_threshold_ms):
            with self._lock:
                self._failure_count += 1
                self._trip()

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failure_count += 1
            if self._failure_count >= self.config.failure_threshold:
                self._trip()

    def reset(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._lockdown_until = 0.0
