# cache.py
"""
Small in-memory TTL cache used for feed pages and follow lookups.

Storage is a ``cachetools.TLRUCache`` so every entry carries its own TTL.
When the cache is full the entry that was read the fewest times is evicted.
"""

import re
import threading
import time

import cachetools


def cache_key(prefix, *parts):
    """``cache_key("explore", "limit=20", None, "uid=ab")`` -> ``"explore:limit=20:uid=ab"``"""
    return ":".join([prefix] + [str(p) for p in parts if p not in (None, "")])


def _entry_expiry(key, entry, now):
    return entry["expires_at"]


class _HitCountCache(cachetools.TLRUCache):
    """TLRUCache that evicts the least read entry instead of the least recent one."""

    def popitem(self):
        with self.timer as now:
            self.expire(now)
            try:
                key = min(self, key=lambda k: self.peek(k)["hits"])
            except ValueError:
                raise KeyError(f"{type(self).__name__} is empty") from None
            return key, self.pop(key)

    def peek(self, key):
        # raw read: no expiry check, no reordering
        return cachetools.Cache.__getitem__(self, key)

    def raw_items(self):
        """Every held entry, expired ones included."""
        return [(key, self.peek(key)) for key in cachetools.Cache.__iter__(self)]


class TTLCache:
    def __init__(self, default_ttl=30, max_entries=200, clock=time.monotonic):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.clock = clock
        self._entries = _HitCountCache(maxsize=max_entries, ttu=_entry_expiry, timer=clock)
        self._lock = threading.RLock()

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._entries.expire()
                return None
            entry["hits"] += 1
            return entry["value"]

    def set(self, key, value, ttl=None):
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = {
                "value": value,
                "expires_at": self.clock() + ttl,
                "hits": 0,
            }

    def get_or_set(self, key, fetcher, ttl=None):
        value = self.get(key)
        if value is not None:
            return value
        value = fetcher()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def invalidate(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_pattern(self, pattern):
        regex = re.compile(pattern)
        with self._lock:
            for key in [k for k in self._entries if regex.search(k)]:
                self._entries.pop(key, None)

    def clear_prefix(self, prefix):
        with self._lock:
            for key in [k for k in self._entries if k.startswith(prefix)]:
                self._entries.pop(key, None)

    def invalidate_user(self, user_id):
        for prefix in ("following", "user", "userPosts"):
            self.invalidate(f"{prefix}:{user_id}")

    def invalidate_post(self, post_id=None):
        if post_id:
            self.invalidate(f"post:{post_id}")
        self.invalidate_pattern(r"^(feed|explore|following|hashtag):")

    def clear(self):
        with self._lock:
            self._entries.clear()

    def cleanup(self):
        """Drop expired entries and return how many were removed."""
        with self._lock:
            return len(self._entries.expire())

    def stats(self):
        now = self.clock()
        with self._lock:
            held = self._entries.raw_items()
        expired = sum(1 for _, e in held if now >= e["expires_at"])
        return {
            "total": len(held),
            "active": len(held) - expired,
            "expired": expired,
            "max_entries": self.max_entries,
        }

    def export(self):
        now = self.clock()
        with self._lock:
            return [
                {
                    "key": key,
                    "hits": e["hits"],
                    "expires_in": round(e["expires_at"] - now, 3),
                }
                for key, e in self._entries.items()
            ]


# following ids and user lookups
api_cache = TTLCache(default_ttl=5 * 60, max_entries=200)
# explore / following / hashtag pages
feed_cache = TTLCache(default_ttl=10, max_entries=200)
