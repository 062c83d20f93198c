import pytest

from tally.cache.ttl import TTLCache
from tally.tests.utils import FakeClock


def test_entry_returned_just_before_ttl_and_absent_just_after():
    clock = FakeClock()
    cache: TTLCache[str, int] = TTLCache(ttl=60.0, clock=clock)
    cache.set("5215550001", 3)

    clock.advance(60.0 - 0.001)
    assert cache.get("5215550001") == 3

    clock.advance(0.002)
    assert cache.get("5215550001") is None


def test_entry_absent_exactly_at_ttl():
    clock = FakeClock()
    cache: TTLCache[str, int] = TTLCache(ttl=10.0, clock=clock)
    cache.set("a", 1)
    clock.advance(10.0)
    assert cache.get("a") is None


def test_touch_updates_value_and_restarts_age():
    clock = FakeClock()
    cache: TTLCache[str, int] = TTLCache(ttl=10.0, clock=clock)
    cache.set("a", 1)

    clock.advance(9.0)
    assert cache.touch("a", lambda v: v + 1) is True

    clock.advance(9.0)
    assert cache.get("a") == 2


def test_touch_ignores_missing_and_expired_entries():
    clock = FakeClock()
    cache: TTLCache[str, int] = TTLCache(ttl=10.0, clock=clock)
    calls = []

    assert cache.touch("missing", lambda v: calls.append(v) or v) is False

    cache.set("a", 1)
    clock.advance(11.0)
    assert cache.touch("a", lambda v: calls.append(v) or v) is False
    assert calls == []


def test_sweep_removes_only_expired_entries():
    clock = FakeClock()
    cache: TTLCache[str, int] = TTLCache(ttl=10.0, clock=clock)
    cache.set("old", 1)
    clock.advance(6.0)
    cache.set("new", 2)
    clock.advance(5.0)

    assert cache.sweep() == 1
    assert len(cache) == 1
    assert cache.get("new") == 2
    assert cache.get("old") is None


def test_invalidate():
    cache: TTLCache[str, int] = TTLCache(ttl=10.0)
    cache.set("a", 1)
    assert cache.invalidate("a") is True
    assert cache.invalidate("a") is False
    assert cache.get("a") is None


def test_non_positive_ttl_rejected():
    with pytest.raises(ValueError):
        TTLCache(ttl=0)
