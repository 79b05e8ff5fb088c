from __future__ import annotations

import contextlib
import threading
from typing import Dict, Iterator, List

from warden.logging import get_logger
from warden.service.errors import DependencyError

logger = get_logger(__name__)

LOCK_TIMEOUT_SECONDS = 10.0


class KeyedLock:
    """One mutual-exclusion section per key, e.g. ``user:{id}``.

    Different keys never contend. Entries are reference counted and dropped
    when the last holder or waiter leaves, so the registry does not grow
    with the number of users ever seen.
    """

    def __init__(self, timeout_seconds: float = LOCK_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds
        self._guard = threading.Lock()
        # key -> [lock, refcount]
        self._locks: Dict[str, List] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _release(self, key: str) -> None:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                self._locks.pop(key, None)

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Acquire the section for ``key``; raises DependencyError on timeout."""
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=self.timeout_seconds):
                logger.error("keyed_lock_timeout", key=key, timeout=self.timeout_seconds)
                raise DependencyError(
                    "Session authority busy; retry the request",
                    detail={"lock": key},
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._release(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


__all__ = ["KeyedLock", "LOCK_TIMEOUT_SECONDS"]
