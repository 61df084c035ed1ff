import pytest
from shapely import transform
from shapely.geometry import Point, box

from siteselect.geo import (
    average_pairwise_distance_km,
    bbox_area_km2,
    haversine_km,
    local_metric_projection,
    point_in_bbox,
)


def test_haversine_known_distance():
    # Warsaw to Krakow is roughly 252 km.
    assert haversine_km(52.2297, 21.0122, 50.0647, 19.9450) == pytest.approx(252, abs=3)
    assert haversine_km(51.5, -0.1, 51.5, -0.1) == 0.0


def test_bbox_area_and_point_in_bbox():
    bbox = {"lat_min": 51.0, "lat_max": 51.1, "lon_min": -0.2, "lon_max": 0.0}
    area = bbox_area_km2(bbox)
    assert 150 < area < 165
    assert point_in_bbox(51.05, -0.1, bbox)
    assert not point_in_bbox(51.2, -0.1, bbox)


def test_average_pairwise_distance():
    assert average_pairwise_distance_km([(51.5, -0.1)]) == 0.0
    d = average_pairwise_distance_km([(51.5, -0.1), (51.5, -0.1), (51.6, -0.1)])
    assert d == pytest.approx((0 + 11.12 + 11.12) / 3, rel=0.01)


def test_local_projection_round_trip_and_scale():
    forward, inverse = local_metric_projection(52.0, 21.0)
    north = transform(Point(21.0, 52.01), forward)
    assert north.x == pytest.approx(0.0)
    assert north.y == pytest.approx(1112, rel=0.01)

    projected = transform(Point(21.01, 52.0), forward)
    back = transform(projected, inverse)
    assert back.x == pytest.approx(21.01)
    assert back.y == pytest.approx(52.0)


def test_local_projection_transforms_polygons():
    forward, inverse = local_metric_projection(0.5, 0.5)
    projected = transform(box(0.0, 0.0, 1.0, 1.0), forward)
    # One degree is about 111 km on both axes near the equator.
    assert projected.area == pytest.approx(111_195 ** 2, rel=0.01)
    assert transform(projected, inverse).equals_exact(box(0.0, 0.0, 1.0, 1.0), 1e-9)
