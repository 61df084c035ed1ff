from datetime import datetime, timedelta, timezone

import pytest

from siteselect.cache import ValidationCache
from siteselect.http import ProviderUnavailable, RequestMetrics
from siteselect.providers import TilequeryResponse, decode_tilequery_response
from siteselect.urban import UrbanSuitabilityValidator, urban_density_index


def feature(layer, cls=None, ftype=None, distance=10.0):
    props = {"tilequery": {"layer": layer, "distance": distance, "geometry": "point"}}
    if cls is not None:
        props["class"] = cls
    if ftype is not None:
        props["type"] = ftype
    return {"type": "Feature", "geometry": {"type": "Point", "coordinates": [0.1, 51.0]}, "properties": props}


class FakeProvider:
    def __init__(self, features=None, error=None):
        self.features = features or []
        self.error = error
        self.calls = []

    def query(self, lat, lng, radius_m, layers):
        self.calls.append((lat, lng, radius_m, layers))
        if self.error is not None:
            raise self.error
        return decode_tilequery_response({"features": self.features})


def classify(features):
    validator = UrbanSuitabilityValidator(FakeProvider())
    return validator.classify(decode_tilequery_response({"features": features})), validator


def test_approved_landuse_is_accepted():
    result, _ = classify([feature("landuse", cls="residential")])
    assert result.is_suitable
    assert result.landuse_type == "residential"


def test_road_and_building_without_landuse_is_accepted():
    result, _ = classify([feature("road", cls="street", ftype="residential", distance=20), feature("building")])
    assert result.is_suitable
    assert result.road_distance_m == 20


def test_road_and_place_is_accepted():
    result, _ = classify([feature("road", ftype="primary"), feature("place", cls="settlement", ftype="village")])
    assert result.is_suitable
    assert result.place_type == "village"


def test_nearest_excluded_landuse_rejects():
    result, validator = classify(
        [
            feature("landuse", cls="forest", distance=5),
            feature("landuse", cls="residential", distance=80),
            feature("road", ftype="primary"),
            feature("building"),
        ]
    )
    assert not result.is_suitable
    assert result.rejection_reason == "excluded_landuse"
    assert validator.rejection_stats()["excluded_landuse"] == 1


def test_missing_road_and_building_reasons():
    result, validator = classify([feature("building")])
    assert result.rejection_reason == "no_road"
    result2 = validator.classify(decode_tilequery_response({"features": [feature("road", ftype="tertiary")]}))
    assert result2.rejection_reason == "no_building"
    stats = validator.rejection_stats()
    assert stats["total_rejected"] == 2
    assert stats["no_road"] == 1
    assert stats["no_building"] == 1
    assert stats["acceptance_rate"] == 0.0


def test_no_features():
    result, _ = classify([])
    assert result.rejection_reason == "no_features"
    assert result.urban_density_index == 0.0


def test_density_index_is_capped():
    features = [feature("building") for _ in range(30)] + [feature("road", ftype="primary") for _ in range(10)]
    response = decode_tilequery_response({"features": features})
    assert urban_density_index(response) == 1.0
    assert urban_density_index(TilequeryResponse()) == 0.0
    small = decode_tilequery_response({"features": [feature("building"), feature("road", ftype="primary")]})
    assert urban_density_index(small) == pytest.approx(0.07)


def test_provider_failure_propagates_and_is_counted():
    metrics = RequestMetrics()
    validator = UrbanSuitabilityValidator(FakeProvider(error=ProviderUnavailable("down")), metrics=metrics)
    with pytest.raises(ProviderUnavailable):
        validator.validate(51.0, 0.1)
    assert metrics.failures["urban"] == 1


def test_cached_result_skips_provider():
    cache = ValidationCache(":memory:")
    provider = FakeProvider([feature("landuse", cls="commercial")])
    validator = UrbanSuitabilityValidator(provider, cache=cache, search_radius_m=150)
    first = validator.validate(51.0, 0.1)
    second = validator.validate(51.0, 0.1)
    assert first == second
    assert len(provider.calls) == 1
    assert provider.calls[0][2] == 150
    assert validator.cache_stats()["hit_rate"] == 0.5
    cache.close()


def test_urban_cache_expires_after_thirty_days():
    now = [datetime(2026, 3, 1, tzinfo=timezone.utc)]
    cache = ValidationCache(":memory:", clock=lambda: now[0])
    metrics = RequestMetrics()
    provider = FakeProvider([feature("landuse", cls="retail")])
    validator = UrbanSuitabilityValidator(provider, cache=cache, metrics=metrics)

    validator.validate(51.234567, 0.123456)
    now[0] += timedelta(days=29)
    validator.validate(51.234567, 0.123456)
    assert len(provider.calls) == 1
    assert metrics.cache_hits["urban"] == 1

    now[0] += timedelta(days=2)
    result = validator.validate(51.234567, 0.123456)
    assert result.is_suitable
    assert len(provider.calls) == 2
    stats = validator.cache_stats()
    assert stats["cache_hits"] == 1
    assert stats["cache_misses"] == 2
    cache.close()
