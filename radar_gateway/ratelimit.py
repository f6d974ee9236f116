"""In-process admission control (token buckets).

Every inbound unit of work is checked against one shared global bucket and one
bucket per caller identity before anything else happens.

 - Per-process (not distributed)
 - Lazy refill, computed on access; idle callers cost nothing
 - Per-caller buckets are bounded by an LRU cap

If the admission logic itself fails the request is admitted (fail open). That
path is logged separately from a genuine rejection.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger("radar_gateway.ratelimit")

SCOPE_GLOBAL = "global"
SCOPE_USER = "user"

# Log a warning once the number of tracked callers grows past this.
BUCKET_COUNT_WARNING = 1000


@dataclass
class TokenBucket:
    """A basic token bucket limiter.

    capacity: max tokens
    refill_rate_per_sec: tokens added per second
    """

    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float, now: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=now)

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = now
        self.tokens = min(self.capacity, max(0.0, self.tokens + elapsed * self.refill_rate_per_sec))

    def peek(self, now: float) -> float:
        self.refill(now)
        return self.tokens

    def retry_after_seconds(self) -> int:
        """Whole seconds until at least one token is available."""
        if self.tokens >= 1:
            return 0
        return int(math.ceil((1 - self.tokens) / self.refill_rate_per_sec))

    def try_consume(self, now: float, cost: float = 1.0) -> Tuple[bool, int]:
        self.refill(now)
        if self.tokens >= cost:
            self.tokens -= cost
            return True, 0
        return False, self.retry_after_seconds()


@dataclass
class AdmissionResult:
    allowed: bool
    retry_after_seconds: int = 0
    scope: Optional[str] = None
    failed_open: bool = False


def parse_rate_limit(spec: str) -> Tuple[float, float]:
    """Parse a compact rate limit spec like '30/m' or '10/s'.

    Returns (capacity, refill_rate_per_sec).
    """
    s = (spec or "").strip().lower()
    if not s:
        raise ValueError("empty rate limit spec")
    if "/" not in s:
        raise ValueError("invalid rate limit spec; expected like '30/m' or '10/s'")
    num_str, unit = s.split("/", 1)
    n = float(num_str)
    unit = unit.strip()
    if n <= 0:
        raise ValueError("rate must be positive")
    if unit in ("s", "sec", "second", "seconds"):
        per_sec = n
    elif unit in ("m", "min", "minute", "minutes"):
        per_sec = n / 60.0
    elif unit in ("h", "hr", "hour", "hours"):
        per_sec = n / 3600.0
    else:
        raise ValueError(f"unsupported rate unit: {unit}")
    # capacity = n (burst size of one unit)
    return float(n), float(per_sec)


class AdmissionController:
    """Global + per-caller token-bucket admission.

    The global bucket is checked first, then the caller's bucket. A token is
    taken from both only when both hold at least one; a rejection by either
    leaves the other untouched.
    """

    def __init__(
        self,
        user_capacity: float = 30.0,
        user_refill_per_sec: float = 0.5,
        global_capacity: float = 100.0,
        global_refill_per_sec: float = 1.67,
        max_keys: int = 10000,
        audit: Optional[Any] = None,
        metrics: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if user_capacity <= 0 or user_refill_per_sec <= 0:
            raise ValueError("user capacity and refill rate must be positive")
        if global_capacity <= 0 or global_refill_per_sec <= 0:
            raise ValueError("global capacity and refill rate must be positive")
        self._user_capacity = float(user_capacity)
        self._user_refill = float(user_refill_per_sec)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 10000
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: "OrderedDict[int, TokenBucket]" = OrderedDict()
        self._global = TokenBucket.new(float(global_capacity), float(global_refill_per_sec), clock())
        self._warned_size = False
        self.audit = audit
        self.metrics = metrics

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> "AdmissionController":
        return cls(
            user_capacity=config.user_capacity,
            user_refill_per_sec=config.user_refill_per_sec,
            global_capacity=config.global_capacity,
            global_refill_per_sec=config.global_refill_per_sec,
            max_keys=config.max_bucket_keys,
            **kwargs,
        )

    def _user_bucket(self, caller_id: int, now: float) -> TokenBucket:
        bucket = self._buckets.get(caller_id)
        if bucket is None:
            bucket = TokenBucket.new(self._user_capacity, self._user_refill, now)
            self._buckets[caller_id] = bucket
            # Prevent unbounded memory growth from high-cardinality callers.
            while len(self._buckets) > self._max_keys:
                self._buckets.popitem(last=False)
            if len(self._buckets) > BUCKET_COUNT_WARNING and not self._warned_size:
                self._warned_size = True
                logger.warning("Rate limiter user bucket count high: %d", len(self._buckets))
        else:
            self._buckets.move_to_end(caller_id)
        return bucket

    def _decide(self, caller_id: int) -> AdmissionResult:
        with self._lock:
            now = self._clock()
            if self._global.peek(now) < 1:
                return AdmissionResult(False, self._global.retry_after_seconds(), SCOPE_GLOBAL)

            bucket = self._user_bucket(caller_id, now)
            if bucket.peek(now) < 1:
                return AdmissionResult(False, bucket.retry_after_seconds(), SCOPE_USER)

            self._global.tokens -= 1
            bucket.tokens -= 1
            return AdmissionResult(True, 0, None)

    async def try_admit(self, caller_id: int) -> AdmissionResult:
        try:
            result = self._decide(caller_id)
        except Exception as e:
            logger.error("Admission check failed for caller %s; failing open: %s", caller_id, e)
            if self.metrics is not None:
                self.metrics.increment_counter("errors", {"component": "admission"})
            return AdmissionResult(True, 0, None, failed_open=True)

        if result.allowed:
            logger.debug("Rate limit check passed for caller %s", caller_id)
            return result

        logger.warning(
            "%s rate limit exceeded for caller %s (retry after %ss)",
            "Global" if result.scope == SCOPE_GLOBAL else "User",
            caller_id,
            result.retry_after_seconds,
        )
        if self.metrics is not None:
            self.metrics.increment_counter("rate_limit_violations", {"scope": str(result.scope)})
        if self.audit is not None:
            await self.audit.rate_limit_exceeded(caller_id, str(result.scope), result.retry_after_seconds)
        return result

    def bucket_tokens(self, caller_id: int) -> Optional[float]:
        """Current (refilled) token count for a caller, None if unseen."""
        with self._lock:
            bucket = self._buckets.get(caller_id)
            if bucket is None:
                return None
            bucket.refill(self._clock())
            return bucket.tokens

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._global.refill(self._clock())
            return {
                "user_bucket_count": len(self._buckets),
                "global_tokens": self._global.tokens,
            }
