"""
Sliding-window rate limiter for write endpoints.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from dispatch_core.core.config import Config

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Per-key sliding window limiter.

    Instances are injected (held on the FastAPI app state), never shared
    through module globals. Keys with no hits left in the window are dropped.
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_requests = max_requests or Config.RATE_LIMIT_MAX_REQUESTS
        self.window_seconds = window_seconds or Config.RATE_LIMIT_WINDOW_SECONDS
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> Deque[float]:
        """Drop expired hits for ``key``; forget the key once none remain."""
        hits = self._hits.get(key)
        if hits is None:
            return deque()
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        if not hits:
            del self._hits[key]
        return hits

    def allow(self, key: str) -> bool:
        """Record a request for ``key``; False when the window is exhausted."""
        now = self._clock()
        with self._lock:
            hits = self._prune(key, now)
            if len(hits) >= self.max_requests:
                logger.warning(f"Rate limit exceeded for {key}")
                return False
            hits.append(now)
            self._hits[key] = hits
            return True

    def remaining(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            return max(0, self.max_requests - len(self._prune(key, now)))

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
