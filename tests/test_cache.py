from datetime import datetime, timedelta, timezone

from siteselect.cache import CacheJanitor, ValidationCache, coordinate_hash


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def test_coordinate_hash_rounds_to_five_decimals():
    assert coordinate_hash(51.500001, -0.1200004) == coordinate_hash(51.5, -0.12)
    assert coordinate_hash(51.50001, -0.12) != coordinate_hash(51.5, -0.12)


def test_put_get_and_lazy_expiry():
    clock = FakeClock()
    cache = ValidationCache(":memory:", clock=clock)
    cache.put("land", 51.5, -0.12, {"is_on_land": True}, timedelta(days=90), raw={"features": []})

    assert cache.get("land", 51.5, -0.12) == {"is_on_land": True}
    assert cache.get("urban", 51.5, -0.12) is None
    assert cache.get_raw("land", 51.5, -0.12) == {"features": []}

    clock.advance(days=90)
    assert cache.get("land", 51.5, -0.12) is None
    assert cache.count("land") == 0
    cache.close()


def test_purge_expired_and_janitor(tmp_path):
    clock = FakeClock()
    cache = ValidationCache(str(tmp_path / "cache.db"), clock=clock)
    cache.put("urban", 1.0, 1.0, {"a": 1}, timedelta(days=30))
    cache.put("land", 1.0, 1.0, {"a": 1}, timedelta(days=90))
    clock.advance(days=31)

    janitor = CacheJanitor(cache, interval_seconds=3600)
    assert janitor.run_once() == 1
    assert cache.count() == 1
    assert cache.count("land") == 1
    cache.close()


def test_cache_persists_across_connections(tmp_path):
    path = str(tmp_path / "cache.db")
    cache = ValidationCache(path, commit_every=1)
    cache.put("land", 10.0, 20.0, {"ok": True}, timedelta(days=1))
    cache.close()

    reopened = ValidationCache(path)
    assert reopened.get("land", 10.0, 20.0) == {"ok": True}
    reopened.close()
