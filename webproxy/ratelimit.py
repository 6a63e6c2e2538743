# Fixed-window request counters keyed by client IP or by target URL.

import logging
import time

from webproxy.config import RATE_LIMIT_WINDOW
from webproxy.store import MemoryStore

logger = logging.getLogger(__name__)


class RateLimitEntry:
    def __init__(self, count, reset_time):
        self.count = count
        self.reset_time = reset_time
        self.refused = 0

    def __repr__(self):
        return f"RateLimitEntry(count={self.count}, reset_time={self.reset_time}, refused={self.refused})"


class RateLimiter:
    """
    One counter per key, reset when its window has passed.
    Keys look like "ip:<addr>" or "url:<target>" (POST budgets append ":post").
    """

    def __init__(self, store=None, window=RATE_LIMIT_WINDOW, clock=time.time):
        self.store = store if store is not None else MemoryStore()
        self.window = window
        self.clock = clock

    def check(self, key, max_requests):
        """Count one request for key. Returns False once max_requests is used up; refused requests are not counted."""
        now = self.clock()

        def step(entry):
            if entry is None or now > entry.reset_time:
                return RateLimitEntry(1, now + self.window), True
            if entry.count >= max_requests:
                entry.refused += 1
                return entry, False
            entry.count += 1
            return entry, True

        allowed = self.store.update(key, step)
        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}")
        return allowed

    def reset_time(self, key):
        """Epoch seconds at which the key's current window ends, or None."""
        entry = self.store.get(key)
        return entry.reset_time if entry else None

    def is_limited(self, key):
        """True while key is refusing requests in its current window. Nothing is counted."""
        entry = self.store.get(key)
        return bool(entry and entry.refused and self.clock() <= entry.reset_time)

    def sweep(self):
        now = self.clock()
        removed = self.store.sweep(lambda key, entry: now > entry.reset_time)
        if removed:
            logger.debug(f"Swept {len(removed)} expired rate limit entries")
        return removed
