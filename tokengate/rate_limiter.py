"""
tokengate - Rate limiting

Fixed-window limiter owned by the HTTP layer and injected where needed.
"""

import threading
import time
from typing import Callable, Dict, Mapping, Optional, Tuple


class RateLimiter:
    """
    At most `max_requests` per `window_s` seconds per key.

    Usage:
        limiter = RateLimiter(max_requests=20, window_s=60)
        allowed, remaining = limiter.check(client_ip)
    """

    def __init__(self, max_requests: int = 20, window_s: float = 60,
                 clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_s = window_s
        self.clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}   # key -> (reset_at, count)
        self._lock = threading.Lock()

    def check(self, key: str) -> Tuple[bool, int]:
        """
        Count one request for key.

        Returns:
            (allowed, remaining requests in the current window)
        """
        now = self.clock()
        with self._lock:
            self._prune(now)
            reset_at, count = self._windows.get(key, (now + self.window_s, 0))
            if count >= self.max_requests:
                return False, 0
            count += 1
            self._windows[key] = (reset_at, count)
            return True, self.max_requests - count

    def reset_at(self, key: str) -> Optional[float]:
        with self._lock:
            window = self._windows.get(key)
            return window[0] if window else None

    def _prune(self, now: float):
        expired = [k for k, (reset_at, _) in self._windows.items() if reset_at <= now]
        for k in expired:
            del self._windows[k]


def client_key(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """First x-forwarded-for hop, then x-real-ip, then the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer or "unknown"
