"""Land suitability: on land, inside the country, clear of the coastline."""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Dict, Optional

from shapely import prepare, transform
from shapely.errors import ShapelyError
from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry

from . import config
from .cache import CacheWriteFailure, ValidationCache
from .geo import local_metric_projection, point_in_bbox
from .http import ProviderUnavailable, RequestMetrics
from .models import LandValidation
from .providers import TilequeryClient, TilequeryResponse

logger = logging.getLogger(__name__)

NAMESPACE = "land"
WATER_LAYERS = "water"


class LandSuitabilityValidator:
    def __init__(
        self,
        cache: Optional[ValidationCache] = None,
        country_geometry: Optional[BaseGeometry] = None,
        country_bbox: Optional[Dict[str, float]] = None,
        provider: Optional[TilequeryClient] = None,
        coastline_buffer_m: float = 300.0,
        metrics: Optional[RequestMetrics] = None,
        ttl_days: int = config.LAND_CACHE_TTL_DAYS,
    ) -> None:
        self.cache = cache
        self.country_geometry = country_geometry
        self.country_bbox = country_bbox
        self.provider = provider
        self.coastline_buffer_m = float(coastline_buffer_m)
        self.metrics = metrics
        self.ttl = timedelta(days=ttl_days)
        self._lock = threading.Lock()
        self._stats = {"cache_hits": 0, "cache_misses": 0, "fail_open": 0, "rejected": 0, "accepted": 0}
        self._projected: Optional[BaseGeometry] = None
        self._inner: Optional[BaseGeometry] = None
        self._forward = None
        if country_geometry is not None:
            self._prepare_geometry(country_geometry)

    def _prepare_geometry(self, geometry: BaseGeometry) -> None:
        centroid = geometry.centroid
        forward, _ = local_metric_projection(centroid.y, centroid.x)
        self._forward = forward
        projected = transform(geometry, forward)
        inner = projected.buffer(-self.coastline_buffer_m) if self.coastline_buffer_m > 0 else projected
        prepare(geometry)
        prepare(inner)
        self._projected = projected
        self._inner = inner

    def _count(self, name: str) -> None:
        with self._lock:
            self._stats[name] += 1

    def cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
        lookups = stats["cache_hits"] + stats["cache_misses"]
        stats["hit_rate"] = round(stats["cache_hits"] / lookups, 4) if lookups else 0.0
        return stats

    def validate(self, lat: float, lng: float) -> LandValidation:
        if self.cache is not None:
            cached = self.cache.get(NAMESPACE, lat, lng)
            if cached is not None:
                self._count("cache_hits")
                if self.metrics is not None:
                    self.metrics.inc_cache_hit("land")
                return LandValidation(**cached)
            self._count("cache_misses")

        try:
            result, raw = self._evaluate(lat, lng)
        except (ProviderUnavailable, ShapelyError) as exc:
            logger.warning("Land validation failed for %.5f,%.5f, keeping point: %s", lat, lng, exc)
            self._count("fail_open")
            if self.metrics is not None:
                self.metrics.inc_failure("land")
            return LandValidation(is_on_land=True, is_in_country=True, fail_open=True, source="fail_open")

        self._count("accepted" if result.is_valid and not result.rejection_reason else "rejected")
        if self.cache is not None:
            try:
                self.cache.put(NAMESPACE, lat, lng, asdict(result), self.ttl, raw=raw)
            except CacheWriteFailure as exc:
                logger.warning("%s", exc)
        return result

    def _evaluate(self, lat: float, lng: float):
        if self.country_geometry is not None:
            return self._check_polygon(lat, lng), None
        if self.country_bbox is not None and not point_in_bbox(lat, lng, self.country_bbox):
            return (
                LandValidation(
                    is_on_land=False, is_in_country=False, rejection_reason="outside_country", source="bbox"
                ),
                None,
            )
        if self.provider is not None:
            response = self.provider.query(lat, lng, config.LAND_COAST_SEARCH_RADIUS_M, WATER_LAYERS)
            return self._classify_water(response), response.raw
        return LandValidation(is_on_land=True, is_in_country=True, source="bbox" if self.country_bbox else "none"), None

    def _check_polygon(self, lat: float, lng: float) -> LandValidation:
        point = Point(lng, lat)
        if not self.country_geometry.contains(point):
            return LandValidation(is_on_land=False, is_in_country=False, rejection_reason="outside_country")
        projected_point = transform(point, self._forward)
        distance = float(self._projected.boundary.distance(projected_point))
        if not self._inner.contains(projected_point):
            return LandValidation(
                is_on_land=True,
                is_in_country=True,
                distance_to_coast_m=round(distance, 1),
                rejection_reason="too_close_to_coast",
            )
        return LandValidation(is_on_land=True, is_in_country=True, distance_to_coast_m=round(distance, 1))

    def _classify_water(self, response: TilequeryResponse) -> LandValidation:
        water = [f for f in response.in_layer("water") if f.distance_m is not None]
        if not water:
            return LandValidation(is_on_land=True, is_in_country=True, source="provider")
        nearest = min(f.distance_m for f in water)
        if nearest <= 0.0:
            return LandValidation(
                is_on_land=False,
                is_in_country=True,
                distance_to_coast_m=0.0,
                rejection_reason="water",
                source="provider",
            )
        if nearest < self.coastline_buffer_m:
            return LandValidation(
                is_on_land=True,
                is_in_country=True,
                distance_to_coast_m=nearest,
                rejection_reason="too_close_to_coast",
                source="provider",
            )
        return LandValidation(is_on_land=True, is_in_country=True, distance_to_coast_m=nearest, source="provider")


def is_accepted(result: LandValidation) -> bool:
    return result.is_valid and result.rejection_reason is None
