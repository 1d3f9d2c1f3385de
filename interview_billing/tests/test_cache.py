"""Bounded TTL cache behaviour with an injected clock."""
import pytest

from interview_billing.core.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_get_returns_value_until_expiry():
    clock = FakeClock()
    cache = TTLCache(max_entries=4, ttl_seconds=10, clock=clock)
    cache.set("a", 1)
    clock.now += 9
    assert cache.get("a") == 1
    clock.now += 2
    assert cache.get("a") is None
    assert len(cache) == 0


def test_lru_eviction_when_full():
    clock = FakeClock()
    cache = TTLCache(max_entries=2, ttl_seconds=60, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1  # a is now most recent
    cache.set("c", 3)
    assert "b" not in cache
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_expired_entries_evicted_before_live_ones():
    clock = FakeClock()
    cache = TTLCache(max_entries=2, ttl_seconds=60, clock=clock)
    cache.set("short", 1, ttl_seconds=1)
    cache.set("long", 2)
    clock.now += 5
    cache.set("new", 3)
    assert cache.get("long") == 2
    assert cache.get("new") == 3


def test_invalidate_and_clear():
    cache = TTLCache(max_entries=3, ttl_seconds=60)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.invalidate("a") is True
    assert cache.invalidate("a") is False
    cache.clear()
    assert len(cache) == 0


@pytest.mark.parametrize("kwargs", [{"max_entries": 0}, {"ttl_seconds": 0}])
def test_rejects_invalid_bounds(kwargs):
    with pytest.raises(ValueError):
        TTLCache(**kwargs)
