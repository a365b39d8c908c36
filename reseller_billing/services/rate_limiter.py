"""
Panel Rate Limiter
==================

Minimum-interval spacing between consecutive remote calls to the same
panel (default 333 ms, i.e. 3 ops/sec). Calls to different panels never
wait on each other. In-memory, resets on restart.

Clock and sleep are injectable so tests run without real waiting.
"""
from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Hashable

logger = logging.getLogger(__name__)


class PanelRateLimiter:
    def __init__(
        self,
        min_interval_s: float = 0.333,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._sleep = sleep
        self._last_call: dict[Hashable, float] = {}
        self._lock = Lock()

    def wait(self, panel_key: Hashable) -> float:
        """Block until *panel_key* may be called again. Returns seconds slept."""
        with self._lock:
            now = self._clock()
            last = self._last_call.get(panel_key)
            delay = 0.0
            if last is not None:
                delay = max(0.0, self.min_interval_s - (now - last))
            # Reserve the slot before sleeping so concurrent callers queue up behind it
            self._last_call[panel_key] = now + delay

        if delay > 0:
            logger.debug("panel_rate_limited panel=%s delay=%.3fs", panel_key, delay)
            self._sleep(delay)
        return delay

    def reset(self) -> None:
        with self._lock:
            self._last_call.clear()
