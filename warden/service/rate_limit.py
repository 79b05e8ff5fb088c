from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from warden.logging import get_logger
from warden.service.errors import RateLimitError

logger = get_logger(__name__)

SWEEP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int

    def raise_for_limit(self) -> None:
        if not self.allowed:
            raise RateLimitError(self.retry_after, detail={"remaining_attempts": self.remaining})


class RateLimitBackend(Protocol):
    async def consume(
        self, key: str, capacity: int, refill_rate: float, cost: int, now: float
    ) -> Tuple[bool, float, int]:
        """Atomically refill and take ``cost`` tokens; returns (allowed, tokens_left, retry_after)."""
        ...

    async def reset(self, key: str) -> None: ...


class MemoryRateLimitBackend:
    """Per-process token buckets for single-node deployments and tests.

    Buckets that have refilled to capacity carry no state worth keeping and
    are dropped by a periodic sweep, so keys chosen by callers (unknown
    emails included) do not accumulate.
    """

    def __init__(self, *, sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS) -> None:
        self._lock = threading.Lock()
        # key -> (tokens, last_ts, full_at)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = 0.0

    async def consume(
        self, key: str, capacity: int, refill_rate: float, cost: int, now: float
    ) -> Tuple[bool, float, int]:
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            tokens, last_ts, _ = self._buckets.get(key, (float(capacity), now, now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(capacity), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            full_at = now + (capacity - tokens) / refill_rate if refill_rate > 0 else math.inf
            self._buckets[key] = (tokens, now, full_at)
            if not allowed:
                retry_after = math.ceil((cost - tokens) / refill_rate) if refill_rate > 0 else 0
                return False, tokens, max(retry_after, 1)
            return True, tokens, 0

    def _sweep(self, now: float) -> None:
        stale = [key for key, (_, _, full_at) in self._buckets.items() if full_at <= now]
        for key in stale:
            del self._buckets[key]
        self._next_sweep = now + self._sweep_interval
        if stale:
            logger.debug("rate_limit_buckets_pruned", count=len(stale))

    async def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)


class RateLimiter:
    """Token-bucket limiter with injected clock and storage backend.

    ``limit`` attempts are allowed per ``window_seconds``; capacity refills
    continuously, so a caller blocked at the limit gets a retry hint for the
    next single attempt rather than the whole window.
    """

    def __init__(
        self,
        backend: Optional[RateLimitBackend] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.backend = backend or MemoryRateLimitBackend()
        self._clock = clock or time.time

    async def hit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(allowed=True, remaining=limit, retry_after=0)
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, retry_after = await self.backend.consume(
            key, limit, refill_rate, max(1, cost), self._clock()
        )
        decision = RateLimitDecision(
            allowed=bool(allowed), remaining=max(0, int(tokens)), retry_after=int(retry_after)
        )
        if not decision.allowed:
            logger.warning("rate_limit_exceeded", key=key, retry_after=decision.retry_after)
        return decision

    async def reset(self, key: str) -> None:
        await self.backend.reset(key)
