from conftest import at
from creator_analytics.cache import QueryCache, as_of_bucket, make_key
from creator_analytics.configuration import CacheConfig


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_as_of_bucket_is_hourly():
    assert as_of_bucket(at(2024, 3, 1, 10, 45)) == as_of_bucket(at(2024, 3, 1, 10, 5))
    assert make_key("retention", "signup", "weekly", ("all",), at(2024, 3, 1, 10, 45))[-1].startswith("2024-03-01T10:00")


def test_closed_period_entries_never_expire():
    clock = FakeClock()
    cache = QueryCache(CacheConfig(enable=True), clock=clock)
    cache.put(("k",), "value", open_period=False)
    clock.now += 10 ** 9

    assert cache.get(("k",)) == (True, "value")


def test_open_period_entries_are_not_stored_without_ttl():
    cache = QueryCache(CacheConfig(enable=True, open_period_ttl_seconds=0))
    cache.put(("k",), "value", open_period=True)

    assert len(cache) == 0
    assert cache.get(("k",)) == (False, None)


def test_open_period_entries_expire_after_ttl():
    clock = FakeClock()
    cache = QueryCache(CacheConfig(enable=True, open_period_ttl_seconds=60), clock=clock)
    cache.put(("k",), "value", open_period=True)

    clock.now += 30
    assert cache.get(("k",)) == (True, "value")
    clock.now += 31
    assert cache.get(("k",)) == (False, None)


def test_least_recently_used_entry_is_evicted():
    cache = QueryCache(CacheConfig(enable=True, max_entries=2))
    cache.put(("a",), 1, open_period=False)
    cache.put(("b",), 2, open_period=False)
    cache.get(("a",))
    cache.put(("c",), 3, open_period=False)

    assert cache.get(("b",)) == (False, None)
    assert cache.get(("a",)) == (True, 1)


def test_get_or_compute_only_computes_on_miss():
    cache = QueryCache()
    calls = []

    def _compute():
        calls.append(1)
        return "fresh"

    assert cache.get_or_compute(("k",), False, _compute) == "fresh"
    assert cache.get_or_compute(("k",), False, _compute) == "fresh"
    assert len(calls) == 1
