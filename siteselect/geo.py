"""Geospatial helpers."""
from __future__ import annotations

import math
from typing import Any, Callable, Dict, Sequence, Tuple

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = EARTH_RADIUS_KM
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_km(lat1, lon1, lat2, lon2) * 1000.0


def bbox_area_km2(bbox: Dict[str, float]) -> float:
    """Approximate area of a lat/lon box, scaling longitude by the mid-latitude."""
    lat_span = abs(bbox["lat_max"] - bbox["lat_min"])
    lon_span = abs(bbox["lon_max"] - bbox["lon_min"])
    mid_lat = (bbox["lat_max"] + bbox["lat_min"]) / 2.0
    km_per_deg = 111.32
    return lat_span * km_per_deg * lon_span * km_per_deg * math.cos(math.radians(mid_lat))


def point_in_bbox(lat: float, lon: float, bbox: Dict[str, float]) -> bool:
    return (
        bbox["lat_min"] <= lat <= bbox["lat_max"]
        and bbox["lon_min"] <= lon <= bbox["lon_max"]
    )


def average_pairwise_distance_km(points: Sequence[Tuple[float, float]], max_points: int = 200) -> float:
    """Mean great-circle distance between all pairs, over at most max_points points."""
    pts = list(points)[:max_points]
    if len(pts) < 2:
        return 0.0
    total = 0.0
    pairs = 0
    for i in range(len(pts)):
        for j in range(i + 1, len(pts)):
            total += haversine_km(pts[i][0], pts[i][1], pts[j][0], pts[j][1])
            pairs += 1
    return total / pairs


def local_metric_projection(lat0: float, lon0: float) -> Tuple[Callable[[Any], Any], Callable[[Any], Any]]:
    """Equirectangular projection in metres around (lat0, lon0) and its inverse.

    Both callables map an (N, 2) coordinate array in shapely's (lon, lat) order
    to a new array, as shapely.transform expects.
    """
    r = EARTH_RADIUS_KM * 1000.0
    cos0 = math.cos(math.radians(lat0))
    scale = math.pi / 180.0 * r

    def forward(coords):
        out = coords.copy()
        out[:, 0] = (coords[:, 0] - lon0) * scale * cos0
        out[:, 1] = (coords[:, 1] - lat0) * scale
        return out

    def inverse(coords):
        out = coords.copy()
        out[:, 0] = lon0 + coords[:, 0] / (scale * cos0)
        out[:, 1] = lat0 + coords[:, 1] / scale
        return out

    return forward, inverse
