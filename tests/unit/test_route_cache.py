"""Tests for the TTL route cache."""

import threading
import time

import pytest

from ticket_operator.route_cache import RouteCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class CountingLoader:
    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        value = self.values.pop(0) if len(self.values) > 1 else self.values[0]
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def clock():
    return FakeClock()


class TestRouteCache:
    def test_value_is_cached_until_ttl(self, clock):
        loader = CountingLoader({"v": 1}, {"v": 2})
        cache = RouteCache(loader, ttl_seconds=30, clock=clock)

        assert cache.get() == {"v": 1}
        clock.now = 29.9
        assert cache.get() == {"v": 1}
        clock.now = 30.0
        assert cache.get() == {"v": 2}
        assert loader.calls == 2

    def test_stale_value_served_when_refresh_fails(self, clock):
        loader = CountingLoader("routes-v1", OSError("file vanished"))
        cache = RouteCache(loader, ttl_seconds=10, clock=clock)
        cache.get()
        clock.now = 11

        assert cache.get() == "routes-v1"
        # A failed refresh leaves the entry expired, so the next call retries
        assert cache.get() == "routes-v1"
        assert loader.calls == 3

    def test_error_raised_without_previous_value(self, clock):
        cache = RouteCache(CountingLoader(ValueError("bad yaml")), clock=clock)

        with pytest.raises(ValueError, match="bad yaml"):
            cache.get()
        assert cache.peek() is None

    def test_invalidate_forces_reload_but_keeps_fallback(self, clock):
        loader = CountingLoader("a", RuntimeError("down"))
        cache = RouteCache(loader, clock=clock)
        cache.get()

        cache.invalidate()

        assert cache.get() == "a"
        assert loader.calls == 2
        assert cache.peek() == "a"

    def test_concurrent_callers_share_one_refresh(self):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_loader():
            calls.append(1)
            started.set()
            release.wait(timeout=5)
            return "fresh"

        cache = RouteCache(slow_loader, ttl_seconds=60)
        results = []
        threads = [threading.Thread(target=lambda: results.append(cache.get())) for _ in range(4)]
        threads[0].start()
        assert started.wait(timeout=5)
        for thread in threads[1:]:
            thread.start()
        time.sleep(0.05)
        release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert results == ["fresh"] * 4
        assert len(calls) == 1
