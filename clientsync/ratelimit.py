"""Rate limiting for background refreshes."""

import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple


class RateLimiter:
    """
    Sliding window rate limiter with a minimum gap between calls.

    A call for a key is allowed when both hold:
    - fewer than `max_requests` calls were recorded in the last
      `window_seconds`
    - at least `min_interval_seconds` passed since the last recorded call

    Runs on the event loop thread only, so no locking.
    """

    def __init__(
        self,
        max_requests: int = 1,
        window_seconds: float = 60.0,
        min_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._requests: Dict[str, List[float]] = defaultdict(list)
        self._last: Dict[str, float] = {}

    def _prune(self, key: str, now: float) -> List[float]:
        window_start = now - self.window_seconds
        recent = [ts for ts in self._requests[key] if ts > window_start]
        self._requests[key] = recent
        return recent

    def retry_after(self, key: str) -> Optional[float]:
        """
        Seconds until a call for the key would be allowed.

        Returns:
            None if a call is allowed now
        """
        now = self._clock()
        recent = self._prune(key, now)
        waits = []

        if len(recent) >= self.max_requests:
            waits.append(min(recent) + self.window_seconds - now)

        # Last call may have aged out of the window but still be too recent
        last = self._last.get(key)
        if last is not None and now - last < self.min_interval_seconds:
            waits.append(last + self.min_interval_seconds - now)

        if not waits:
            return None
        return max(max(waits), 0.0)

    def check(self, key: str) -> Tuple[bool, Optional[float]]:
        """
        Check whether a call is allowed and record it if so.

        Args:
            key: What is being limited

        Returns:
            Tuple of (allowed, retry_after_seconds). retry_after_seconds is
            None when allowed.
        """
        wait = self.retry_after(key)
        if wait is not None:
            return False, wait
        self.record(key)
        return True, None

    def record(self, key: str) -> None:
        """Record a call without checking (forced calls still count)."""
        now = self._clock()
        self._requests[key].append(now)
        self._last[key] = now

    def remaining(self, key: str) -> int:
        """Number of calls left in the current window."""
        recent = self._prune(key, self._clock())
        return max(0, self.max_requests - len(recent))

    def reset(self, key: Optional[str] = None) -> None:
        """Forget recorded calls for one key, or for every key."""
        if key is None:
            self._requests.clear()
            self._last.clear()
            return
        self._requests.pop(key, None)
        self._last.pop(key, None)
