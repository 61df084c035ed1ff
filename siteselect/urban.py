"""Urban suitability from land-use, road, building and place features."""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Dict, Optional

from . import config
from .cache import CacheWriteFailure, ValidationCache
from .http import ProviderUnavailable, RequestMetrics
from .models import UrbanValidation
from .providers import TilequeryClient, TilequeryResponse

logger = logging.getLogger(__name__)

NAMESPACE = "urban"


def urban_density_index(response: TilequeryResponse) -> float:
    buildings = len(response.in_layer("building"))
    roads = len(response.in_layer("road"))
    density = min(1.0, buildings * 0.02 + roads * 0.05)
    return round(density, 2)


def _nearest(features):
    with_distance = [f for f in features if f.distance_m is not None]
    if with_distance:
        return min(with_distance, key=lambda f: f.distance_m)
    return features[0] if features else None


class UrbanSuitabilityValidator:
    """Classifies a point's surroundings; raises ProviderUnavailable on provider failure."""

    def __init__(
        self,
        provider: TilequeryClient,
        cache: Optional[ValidationCache] = None,
        search_radius_m: float = config.URBAN_SEARCH_RADIUS_M,
        metrics: Optional[RequestMetrics] = None,
        ttl_days: int = config.URBAN_CACHE_TTL_DAYS,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.search_radius_m = float(search_radius_m)
        self.metrics = metrics
        self.ttl = timedelta(days=ttl_days)
        self._lock = threading.Lock()
        self._cache_counts = {"cache_hits": 0, "cache_misses": 0, "api_calls": 0}
        self._rejections = {
            "excluded_landuse": 0,
            "no_road": 0,
            "no_building": 0,
            "no_valid_landuse": 0,
            "no_features": 0,
            "total_rejected": 0,
            "total_accepted": 0,
        }

    def cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats: Dict[str, Any] = dict(self._cache_counts)
        lookups = stats["cache_hits"] + stats["cache_misses"]
        stats["hit_rate"] = round(stats["cache_hits"] / lookups, 4) if lookups else 0.0
        return stats

    def rejection_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats: Dict[str, Any] = dict(self._rejections)
        decided = stats["total_accepted"] + stats["total_rejected"]
        stats["acceptance_rate"] = round(stats["total_accepted"] / decided, 4) if decided else 0.0
        return stats

    def _bump(self, table: Dict[str, int], *names: str) -> None:
        with self._lock:
            for name in names:
                table[name] += 1

    def validate(self, lat: float, lng: float) -> UrbanValidation:
        if self.cache is not None:
            cached = self.cache.get(NAMESPACE, lat, lng)
            if cached is not None:
                self._bump(self._cache_counts, "cache_hits")
                if self.metrics is not None:
                    self.metrics.inc_cache_hit("urban")
                return UrbanValidation(**cached)
            self._bump(self._cache_counts, "cache_misses")

        try:
            response = self.provider.query(lat, lng, self.search_radius_m, config.URBAN_TILEQUERY_LAYERS)
        except ProviderUnavailable:
            if self.metrics is not None:
                self.metrics.inc_failure("urban")
            raise
        self._bump(self._cache_counts, "api_calls")

        result = self.classify(response)
        if self.cache is not None:
            try:
                self.cache.put(NAMESPACE, lat, lng, asdict(result), self.ttl, raw=response.raw)
            except CacheWriteFailure as exc:
                logger.warning("%s", exc)
        return result

    def classify(self, response: TilequeryResponse) -> UrbanValidation:
        density = urban_density_index(response)
        if not response.features:
            self._bump(self._rejections, "no_features", "total_rejected")
            return UrbanValidation(is_suitable=False, urban_density_index=0.0, rejection_reason="no_features")

        landuse = _nearest(response.in_layer("landuse"))
        roads = [f for f in response.in_layer("road") if (f.feature_type or f.feature_class) in config.ACCEPTED_ROAD_TYPES]
        buildings = response.in_layer("building")
        places = [f for f in response.in_layer("place") if (f.feature_type or f.feature_class) in config.ACCEPTED_PLACE_TYPES]
        road = _nearest(roads)
        building = _nearest(buildings)
        place = _nearest(places)

        landuse_type = None
        if landuse is not None:
            landuse_type = landuse.feature_type or landuse.feature_class

        common = dict(
            urban_density_index=density,
            landuse_type=landuse_type,
            road_distance_m=road.distance_m if road else None,
            building_distance_m=building.distance_m if building else None,
            place_type=(place.feature_type or place.feature_class) if place else None,
        )

        if landuse_type in config.EXCLUDED_LANDUSE:
            self._bump(self._rejections, "excluded_landuse", "total_rejected")
            return UrbanValidation(is_suitable=False, rejection_reason="excluded_landuse", **common)

        approved = landuse_type in config.APPROVED_LANDUSE
        if approved or (road is not None and (building is not None or place is not None)):
            self._bump(self._rejections, "total_accepted")
            return UrbanValidation(is_suitable=True, **common)

        reasons = ["total_rejected", "no_valid_landuse"]
        if road is None:
            reasons.append("no_road")
        if building is None and place is None:
            reasons.append("no_building")
        self._bump(self._rejections, *reasons)
        reason = "no_road" if road is None else "no_building"
        return UrbanValidation(is_suitable=False, rejection_reason=reason, **common)
