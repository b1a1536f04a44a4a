"""Tests for the in-process decision cache."""
from __future__ import annotations

from datetime import timedelta

from azuka.services.decision_cache import DASHBOARD, DECISION, CacheKey, DecisionCache

from conftest import FixedClock


def _cache(clock: FixedClock, **kwargs) -> DecisionCache:
    return DecisionCache(clock=clock, **kwargs)


def test_get_returns_equal_copy(clock: FixedClock):
    cache = _cache(clock)
    key = CacheKey(DECISION, "ada", "2026-03-10")
    value = {"today_focus": {"calories": 2015}, "applied_rules": ["default"]}

    cache.set(key, value)
    value["applied_rules"].append("mutated")
    first = cache.get(key)
    first["today_focus"]["calories"] = 0

    assert cache.get(key) == {"today_focus": {"calories": 2015}, "applied_rules": ["default"]}


def test_missing_key_is_none(clock: FixedClock):
    assert _cache(clock).get(CacheKey(DECISION, "ada", "2026-03-10")) is None


def test_entries_expire_after_ttl(clock: FixedClock):
    cache = _cache(clock)
    key = CacheKey(DECISION, "ada", "2026-03-10")
    cache.set(key, "decision", ttl=timedelta(minutes=5))

    clock.advance(299)
    assert cache.get(key) == "decision"

    clock.advance(1)
    assert cache.get(key) is None
    assert len(cache) == 0


def test_default_ttl_applies(clock: FixedClock):
    cache = _cache(clock, default_ttl=timedelta(hours=24))
    key = CacheKey(DECISION, "ada", "2026-03-10")
    cache.set(key, "decision")

    clock.advance(24 * 3600 - 1)
    assert cache.get(key) == "decision"
    clock.advance(1)
    assert cache.get(key) is None


def test_zero_ttl_expires_immediately(clock: FixedClock):
    cache = _cache(clock, default_ttl=timedelta(hours=24))
    key = CacheKey(DECISION, "ada", "2026-03-10")

    cache.set(key, "decision", ttl=timedelta(0))

    assert cache.get(key) is None


def test_oldest_entry_evicted_when_full(clock: FixedClock):
    cache = _cache(clock, max_entries=2)
    first = CacheKey(DECISION, "ada", "2026-03-10")
    second = CacheKey(DECISION, "ada", "2026-03-11")
    third = CacheKey(DECISION, "ada", "2026-03-12")

    cache.set(first, 1)
    cache.set(second, 2)
    cache.set(third, 3)

    assert cache.get(first) is None
    assert cache.get(second) == 2
    assert cache.get(third) == 3


def test_overwrite_does_not_evict(clock: FixedClock):
    cache = _cache(clock, max_entries=2)
    first = CacheKey(DECISION, "ada", "2026-03-10")
    second = CacheKey(DECISION, "ada", "2026-03-11")

    cache.set(first, 1)
    cache.set(second, 2)
    cache.set(second, 22)

    assert cache.get(first) == 1
    assert cache.get(second) == 22


def test_invalidate_user_only_touches_that_user(clock: FixedClock):
    cache = _cache(clock)
    cache.set(CacheKey(DECISION, "ada", "2026-03-10"), 1)
    cache.set(CacheKey(DASHBOARD, "ada", "2026-03-10"), 2)
    cache.set(CacheKey(DECISION, "grace", "2026-03-10"), 3)

    assert cache.invalidate_user("ada") == 2
    assert cache.get(CacheKey(DECISION, "grace", "2026-03-10")) == 3
    assert len(cache) == 1


def test_cleanup_expired_removes_stale_entries(clock: FixedClock):
    cache = _cache(clock)
    cache.set(CacheKey(DECISION, "ada", "2026-03-10"), 1, ttl=timedelta(minutes=5))
    cache.set(CacheKey(DECISION, "ada", "2026-03-11"), 2, ttl=timedelta(hours=1))

    clock.advance(600)
    cache.cleanup_expired()

    assert len(cache) == 1
    cache.clear()
    assert len(cache) == 0
