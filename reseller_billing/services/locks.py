"""
In-process TTL locks.

Non-blocking, expiring key locks used as overlap guards: one charging pass
per reseller at a time, one final settlement per (config, action) within
the guard window. A lock that is never released simply expires, and
expired keys are dropped on the next acquire.
"""
from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable

logger = logging.getLogger(__name__)


class TTLLockRegistry:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires: dict[str, float] = {}
        self._lock = Lock()

    def acquire(self, key: str, ttl_s: float) -> bool:
        """Take *key* for *ttl_s* seconds. False if someone else holds it."""
        with self._lock:
            now = self._clock()
            self._purge(now)
            if key in self._expires:
                return False
            self._expires[key] = now + ttl_s
            return True

    def _purge(self, now: float) -> None:
        expired = [k for k, expires in self._expires.items() if expires <= now]
        for k in expired:
            del self._expires[k]

    def release(self, key: str) -> None:
        with self._lock:
            self._expires.pop(key, None)

    def is_held(self, key: str) -> bool:
        with self._lock:
            expires = self._expires.get(key)
            return expires is not None and expires > self._clock()
