import threading
import time

import pytest

import dedupe
from cache import TTLCache, cache_key


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def test_cache_key_skips_empty_parts():
    assert cache_key("explore", "limit=20", None, "", "uid=1") == "explore:limit=20:uid=1"
    assert cache_key("post") == "post"


def test_get_set_and_expiry(clock):
    cache = TTLCache(default_ttl=10, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2, ttl=30)
    assert cache.get("a") == 1
    clock.now = 11
    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.stats()["active"] == 1


def test_evicts_least_read_entry(clock):
    cache = TTLCache(max_entries=2, clock=clock)
    cache.set("hot", 1)
    cache.set("cold", 2)
    cache.get("hot")
    cache.set("new", 3)
    assert cache.get("cold") is None
    assert cache.get("hot") == 1
    assert cache.get("new") == 3


def test_expired_entries_make_room_before_eviction(clock):
    cache = TTLCache(max_entries=2, clock=clock)
    cache.set("short", 1, ttl=1)
    cache.set("long", 2, ttl=100)
    clock.now = 2
    cache.set("new", 3)
    assert cache.get("long") == 2
    assert cache.get("new") == 3


def test_invalidation_helpers(clock):
    cache = TTLCache(clock=clock)
    for key in ("following:u1", "user:u1", "userPosts:u1", "user:u2", "post:p1", "explore:limit=20", "feed:x", "hashtag:sun"):
        cache.set(key, True)

    cache.invalidate_user("u1")
    assert cache.get("following:u1") is None
    assert cache.get("user:u2") is True

    cache.invalidate_post("p1")
    assert cache.get("post:p1") is None
    assert cache.get("explore:limit=20") is None
    assert cache.get("feed:x") is None
    assert cache.get("hashtag:sun") is None
    assert cache.get("user:u2") is True

    cache.clear_prefix("user:")
    assert cache.get("user:u2") is None


def test_cleanup_stats_and_export(clock):
    cache = TTLCache(default_ttl=5, max_entries=50, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2, ttl=100)
    clock.now = 6
    assert cache.stats() == {"total": 2, "active": 1, "expired": 1, "max_entries": 50}
    assert cache.cleanup() == 1
    exported = cache.export()
    assert [e["key"] for e in exported] == ["b"]
    assert exported[0]["expires_in"] == 94


def test_get_or_set_caches_empty_lists(clock):
    cache = TTLCache(clock=clock)
    calls = []

    def fetch():
        calls.append(1)
        return []

    assert cache.get_or_set("k", fetch) == []
    assert cache.get_or_set("k", fetch) == []
    assert len(calls) == 1


class TestDedupe:
    def setup_method(self):
        dedupe.clear_pending()

    def test_concurrent_calls_share_one_result(self):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow():
            calls.append(1)
            started.set()
            release.wait(2)
            return "value"

        results = []
        first = threading.Thread(target=lambda: results.append(dedupe.dedupe("k", slow)))
        first.start()
        started.wait(2)
        second = threading.Thread(target=lambda: results.append(dedupe.dedupe("k", slow)))
        second.start()
        time.sleep(0.05)
        release.set()
        first.join(2)
        second.join(2)

        assert results == ["value", "value"]
        assert len(calls) == 1

    def test_result_lingers_then_expires(self):
        clock = FakeClock()
        calls = []

        def fn():
            calls.append(1)
            return len(calls)

        assert dedupe.dedupe("k", fn, linger=0.1, clock=clock) == 1
        clock.now = 0.05
        assert dedupe.dedupe("k", fn, linger=0.1, clock=clock) == 1
        clock.now = 0.5
        assert dedupe.dedupe("k", fn, linger=0.1, clock=clock) == 2

    def test_forget_and_errors(self):
        def boom():
            raise RuntimeError("down")

        clock = FakeClock()
        with pytest.raises(RuntimeError):
            dedupe.dedupe("err", boom, clock=clock)
        with pytest.raises(RuntimeError):
            dedupe.dedupe("err", lambda: "ok", clock=clock)
        dedupe.forget("err")
        assert dedupe.dedupe("err", lambda: "ok", clock=clock) == "ok"
