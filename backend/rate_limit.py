# rate_limit.py
import time
from dataclasses import dataclass
from typing import Callable, Dict

# ---------------------------
# In-memory per-IP limits
# (reset on restart; the store-backed admin lockout is the durable backstop)
# ---------------------------


@dataclass
class Window:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed window counter per key: `limit` requests per `window_sec`."""

    def __init__(self, limit: int, window_sec: float, now_func: Callable[[], float] = time.time):
        self.limit = limit
        self.window_sec = window_sec
        self._now = now_func
        self._windows: Dict[str, Window] = {}

    def check(self, key: str) -> bool:
        """Count one request for `key`; True means the caller is over the limit."""
        now = self._now()
        w = self._windows.get(key)
        if w is None or now > w.reset_at:
            self._windows[key] = Window(count=1, reset_at=now + self.window_sec)
            self._prune(now)
            return False
        w.count += 1
        return w.count > self.limit

    def _prune(self, now: float) -> None:
        if len(self._windows) < 10_000:
            return
        for k in [k for k, w in self._windows.items() if now > w.reset_at]:
            del self._windows[k]


class Cooldown:
    """One action per key per `interval_sec`."""

    def __init__(self, interval_sec: float, now_func: Callable[[], float] = time.time):
        self.interval_sec = interval_sec
        self._now = now_func
        self._last: Dict[str, float] = {}

    def blocked(self, key: str) -> bool:
        last = self._last.get(key)
        return last is not None and self._now() - last < self.interval_sec

    def touch(self, key: str) -> None:
        self._last[key] = self._now()


def general_limiter(now_func: Callable[[], float] = time.time) -> RateLimiter:
    return RateLimiter(limit=120, window_sec=60, now_func=now_func)


def admin_limiter(now_func: Callable[[], float] = time.time) -> RateLimiter:
    return RateLimiter(limit=5, window_sec=60, now_func=now_func)
