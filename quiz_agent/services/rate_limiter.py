import time
from typing import Callable, Dict, List

import structlog

logger = structlog.get_logger(__name__)

MAX_TRACKED_KEYS = 10_000


class SlidingWindowRateLimiter:
    """In-process per-key sliding window; owned by the app state, not a module global"""

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_tracked_keys: int = MAX_TRACKED_KEYS):
        self.clock = clock
        self.max_tracked_keys = max_tracked_keys
        self._requests: Dict[str, List[float]] = {}

    def check(self, key: str, max_requests: int, window_seconds: float) -> bool:
        """Record a request for ``key`` and return False if it exceeds the window budget"""
        now = self.clock()
        window_start = now - window_seconds

        recent = [t for t in self._requests.get(key, []) if t > window_start]
        if len(recent) >= max_requests:
            self._requests[key] = recent
            return False

        recent.append(now)
        self._requests[key] = recent

        if len(self._requests) > self.max_tracked_keys:
            self._cleanup(window_start)
        return True

    def _cleanup(self, cutoff: float) -> None:
        before = len(self._requests)
        for key in list(self._requests):
            recent = [t for t in self._requests[key] if t > cutoff]
            if recent:
                self._requests[key] = recent
            else:
                del self._requests[key]
        logger.debug(f"Rate limiter cleanup: {before} -> {len(self._requests)} keys")

    def __len__(self) -> int:
        return len(self._requests)
