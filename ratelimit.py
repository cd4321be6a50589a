# ratelimit.py
"""
Fixed-window rate limiting kept in process memory.

Counting is done by ``limits`` (a fixed window per key on a
``MemoryStorage``). On top of that each limiter keeps a block map: once a
key uses up ``max_attempts`` inside the window it is refused for
``block_seconds``, even after the counting window has rolled over. State
lives in this process only, so with several WSGI workers every worker keeps
its own counts.
"""

import math
import threading
import time
from collections import namedtuple

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

RateLimitStatus = namedtuple("RateLimitStatus", ["allowed", "remaining", "reset_at"])


class RateLimiter:
    def __init__(self, window_seconds, max_attempts, block_seconds, clock=time.monotonic, storage=None):
        self.window_seconds = window_seconds
        self.max_attempts = max_attempts
        self.block_seconds = block_seconds
        self.clock = clock
        self.storage = storage if storage is not None else MemoryStorage()
        self.item = RateLimitItemPerSecond(max_attempts, window_seconds, namespace="monolog")
        self.window = FixedWindowRateLimiter(self.storage)
        self._blocked_until = {}
        self._lock = threading.Lock()

    def _blocked(self, key, now):
        until = self._blocked_until.get(key)
        if until is None:
            return None
        if now < until:
            return until
        # block over: start counting from zero again
        del self._blocked_until[key]
        self.window.clear(self.item, key)
        return None

    def _block(self, key, now):
        self._blocked_until[key] = now + self.block_seconds
        return self._blocked_until[key]

    def _window_status(self, key, now):
        stats = self.window.get_window_stats(self.item, key)
        if stats.remaining == self.max_attempts:
            reset_at = now + self.window_seconds
        else:
            # limits reports epoch seconds; move it onto our clock
            reset_at = now + max(0.0, stats.reset_time - time.time())
        return RateLimitStatus(stats.remaining > 0, stats.remaining, reset_at)

    def check(self, key):
        """Report the state of ``key`` without counting anything."""
        with self._lock:
            now = self.clock()
            until = self._blocked(key, now)
            if until is not None:
                return RateLimitStatus(False, 0, until)
            return self._window_status(key, now)

    def hit(self, key):
        """Count one request for ``key`` and return the resulting status.

        The request that uses up the last attempt is allowed, and the key
        is then blocked for ``block_seconds``.
        """
        with self._lock:
            now = self.clock()
            until = self._blocked(key, now)
            if until is not None:
                return RateLimitStatus(False, 0, until)

            counted = self.window.hit(self.item, key)
            status = self._window_status(key, now)
            if not counted:
                return RateLimitStatus(False, 0, self._block(key, now))
            if status.remaining == 0:
                return RateLimitStatus(True, 0, self._block(key, now))
            return status

    def record_failure(self, key):
        """Count a failed attempt; the failure that reaches the max blocks the key."""
        with self._lock:
            now = self.clock()
            if self._blocked(key, now) is not None:
                return
            self.window.hit(self.item, key)
            if not self.window.test(self.item, key):
                self._block(key, now)

    def record_success(self, key):
        with self._lock:
            self._blocked_until.pop(key, None)
            self.window.clear(self.item, key)

    def retry_after(self, status):
        """Seconds until ``status.reset_at``, never less than 1."""
        return max(1, int(math.ceil(status.reset_at - self.clock())))

    def reset(self):
        with self._lock:
            self._blocked_until.clear()
            self.storage.reset()


# Presets
auth_limiter = RateLimiter(window_seconds=15 * 60, max_attempts=5, block_seconds=15 * 60)
api_limiter = RateLimiter(window_seconds=60, max_attempts=30, block_seconds=5 * 60)
strict_limiter = RateLimiter(window_seconds=60, max_attempts=10, block_seconds=10 * 60)

# sign-in is throttled both by client IP and by the identifier being tried
signin_ip_limiter = RateLimiter(window_seconds=60, max_attempts=5, block_seconds=15 * 60)
signin_identifier_limiter = RateLimiter(window_seconds=60, max_attempts=5, block_seconds=15 * 60)

ALL_LIMITERS = (auth_limiter, api_limiter, strict_limiter, signin_ip_limiter, signin_identifier_limiter)
