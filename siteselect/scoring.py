"""Weighted multi-factor viability scoring.

Each factor is reduced to a subscore in [0, 1]. Factors backed by estimated
data have their weight capped; the removed weight moves to the coverage-gap
factor and the weights are renormalised, so effective weights always sum to 1.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import ExpansionConfig, WhiteSpaceConfig
from .geo import haversine_km
from .models import Candidate, DataQuality, ExistingStore, RawFactors, Settlement

logger = logging.getLogger(__name__)

CLASSIFICATION_RADIUS_KM = 5.0
URBAN_DENSITY_THRESHOLD = 400.0
SUBURBAN_DENSITY_THRESHOLD = 150.0
POPULATION_BAND_VALUES = {"small": 50000, "medium": 300000, "large": 750000}
DENSITY_POPULATION_SCALE = 30000.0
ANCHOR_SATURATION_COUNT = 10.0
SATURATION_STORE_COUNT = 5.0


@dataclass(frozen=True)
class AnchorCounts:
    malls: int = 0
    grocery: int = 0
    transit: int = 0


AnchorSource = Callable[[float, float], Optional[AnchorCounts]]


@dataclass(frozen=True)
class ScoreResult:
    final_score: float
    confidence: float
    data_quality: DataQuality
    raw_factors: RawFactors
    subscores: Dict[str, float]
    weights: Dict[str, float]
    is_white_space: bool
    explanation: Tuple[str, ...]


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def deduplicate_anchors(counts: AnchorCounts, overlap_fraction: float = 0.20) -> float:
    """Anchor total with an assumed share of grocery anchors counted inside malls."""
    grocery = counts.grocery * (1.0 - overlap_fraction)
    return max(0.0, counts.malls + grocery + counts.transit)


def effective_weights(
    nominal: Dict[str, float],
    quality: DataQuality,
    estimated_cap: float = 0.5,
    anchor_cap: float = 0.8,
) -> Dict[str, float]:
    weights = dict(nominal)
    removed = 0.0
    caps = (
        ("population", quality.population_estimated, estimated_cap),
        ("performance", quality.performance_estimated, estimated_cap),
        ("anchors", quality.anchors_estimated, anchor_cap),
    )
    for name, estimated, cap in caps:
        if estimated:
            capped = weights[name] * cap
            removed += weights[name] - capped
            weights[name] = capped
    weights["coverage_gap"] += removed
    total = sum(weights.values())
    if total <= 0:
        raise ValueError("Scoring weights sum to zero")
    return {name: value / total for name, value in weights.items()}


def classify_area(population_in_radius: float) -> str:
    density = population_in_radius / (math.pi * CLASSIFICATION_RADIUS_KM ** 2)
    if density >= URBAN_DENSITY_THRESHOLD:
        return "urban"
    if density >= SUBURBAN_DENSITY_THRESHOLD:
        return "suburban"
    return "rural"


def coverage_radius_km(area_class: str, ws: WhiteSpaceConfig) -> float:
    if area_class == "urban":
        return ws.urban_coverage_km
    if area_class == "rural":
        return ws.rural_coverage_km
    return ws.suburban_coverage_km


def white_space_points(
    nearest_store_km: Optional[float],
    area_class: str,
    population: float,
    ws: WhiteSpaceConfig,
) -> Tuple[float, bool, float]:
    """Return (points, is_white_space, distance_ratio)."""
    radius = coverage_radius_km(area_class, ws)
    if nearest_store_km is None:
        ratio = math.inf
    else:
        ratio = nearest_store_km / radius
    if ratio <= 1.0:
        return ws.proximity_max * clamp(ratio), False, ratio

    points = ws.base_boost
    if population > ws.high_population_threshold:
        points += ws.population_boost
    if ratio > ws.remote_ratio:
        points += min(ws.max_remote_boost, (ratio - 1.0) * 10.0)
    if area_class == "rural":
        points += ws.rural_boost
    return min(ws.max_boost, points), True, ratio


def population_subscore(population: float) -> float:
    if population <= 0:
        return 0.0
    return clamp((math.log10(population) - 3.0) / 3.0)


class ScoringEngine:
    def __init__(
        self,
        cfg: ExpansionConfig,
        stores: Sequence[ExistingStore],
        settlements: Optional[Sequence[Settlement]] = None,
        anchor_source: Optional[AnchorSource] = None,
    ) -> None:
        self.cfg = cfg
        self.stores = list(stores)
        self.settlements = list(settlements or [])
        self.anchor_source = anchor_source
        turnovers = [s.turnover for s in self.stores if s.turnover is not None and s.turnover > 0]
        self.network_mean_turnover = sum(turnovers) / len(turnovers) if turnovers else None

    # --- factor inputs ---

    def nearest_store_km(self, lat: float, lng: float) -> Optional[float]:
        if not self.stores:
            return None
        return min(haversine_km(lat, lng, s.lat, s.lng) for s in self.stores)

    def _stores_within(self, lat: float, lng: float, radius_km: float) -> List[ExistingStore]:
        return [s for s in self.stores if haversine_km(lat, lng, s.lat, s.lng) <= radius_km]

    def population_estimate(self, lat: float, lng: float, urban_density: float) -> Tuple[float, bool]:
        """Population within the classification radius and whether it is estimated."""
        measured = [
            s.population
            for s in self.settlements
            if s.population is not None
            and haversine_km(lat, lng, s.lat, s.lng) <= CLASSIFICATION_RADIUS_KM
        ]
        if measured:
            return float(sum(measured)), False

        bands = [
            POPULATION_BAND_VALUES.get((s.city_population_band or "").lower(), 100000)
            for s in self._stores_within(lat, lng, CLASSIFICATION_RADIUS_KM)
            if s.city_population_band
        ]
        if bands:
            return sum(bands) / len(bands), True
        return urban_density * DENSITY_POPULATION_SCALE, True

    def anchor_counts(self, lat: float, lng: float, urban_density: float) -> Tuple[AnchorCounts, bool]:
        if self.anchor_source is not None:
            counts = self.anchor_source(lat, lng)
            if counts is not None:
                return counts, False
        return (
            AnchorCounts(
                malls=int(round(urban_density * 3)),
                grocery=int(round(urban_density * 10)),
                transit=int(round(urban_density * 4)),
            ),
            True,
        )

    def peer_performance(self, lat: float, lng: float) -> Tuple[Optional[float], Optional[float], bool]:
        """(ratio to network mean, mean nearby turnover, estimated)."""
        if not self.network_mean_turnover:
            return None, None, True
        nearby = [
            s.turnover
            for s in self._stores_within(lat, lng, self.cfg.peer_radius_km)
            if s.turnover is not None and s.turnover > 0
        ]
        if not nearby:
            return None, None, True
        mean = sum(nearby) / len(nearby)
        return mean / self.network_mean_turnover, mean, False

    def saturation(self, lat: float, lng: float) -> float:
        count = len(self._stores_within(lat, lng, self.cfg.saturation_radius_km))
        return clamp(count / SATURATION_STORE_COUNT)

    # --- scoring ---

    def provisional_score(self, lat: float, lng: float) -> float:
        """Geometry-only gap score used to pick samples inside a tile."""
        nearest = self.nearest_store_km(lat, lng)
        points, _, _ = white_space_points(nearest, "suburban", 0.0, self.cfg.white_space)
        return points

    def score(self, candidate: Candidate) -> ScoreResult:
        lat, lng = candidate.lat, candidate.lng
        density = candidate.urban.urban_density_index if candidate.urban else 0.0
        landuse = candidate.urban.landuse_type if candidate.urban else None

        population, population_estimated = self.population_estimate(lat, lng, density)
        area_class = classify_area(population)
        nearest = self.nearest_store_km(lat, lng)
        gap_points, is_white_space, ratio = white_space_points(
            nearest, area_class, population, self.cfg.white_space
        )
        anchors, anchors_estimated = self.anchor_counts(lat, lng, density)
        anchor_total = deduplicate_anchors(anchors, self.cfg.anchor_overlap_fraction)
        performance, nearby_turnover, performance_estimated = self.peer_performance(lat, lng)
        saturation = self.saturation(lat, lng)

        quality = DataQuality(
            population_estimated=population_estimated,
            coverage_gap_estimated=False,
            anchors_estimated=anchors_estimated,
            performance_estimated=performance_estimated,
            saturation_estimated=False,
        )
        subscores = {
            "population": population_subscore(population),
            "coverage_gap": clamp(gap_points / self.cfg.white_space.max_boost),
            "anchors": clamp(anchor_total / ANCHOR_SATURATION_COUNT),
            "performance": 0.5 if performance is None else clamp(performance / 2.0),
            "saturation": 1.0 - saturation,
        }
        weights = effective_weights(
            self.cfg.weights.as_dict(),
            quality,
            estimated_cap=self.cfg.estimated_weight_cap,
            anchor_cap=self.cfg.estimated_anchor_weight_cap,
        )
        final = clamp(100.0 * sum(weights[k] * subscores[k] for k in weights), 0.0, 100.0)

        confidence = 0.4 + 0.6 * quality.completeness
        if candidate.land is not None and candidate.land.fail_open:
            confidence -= 0.1
        if candidate.urban is None:
            confidence -= 0.1
        confidence = clamp(confidence)

        if is_white_space:
            gap_text = (
                "White space: no existing stores"
                if nearest is None
                else f"White space: {nearest:.1f}km from nearest store ({area_class}, ratio {ratio:.2f})"
            )
        else:
            gap_text = f"Covered: {nearest:.1f}km from nearest store ({area_class})"
        explanation = (
            gap_text,
            f"Population ~{int(population):,}{' (estimated)' if population_estimated else ''}",
            f"Anchors {anchor_total:.1f} after de-duplication{' (estimated)' if anchors_estimated else ''}",
            "Peer performance: no nearby turnover data"
            if performance is None
            else f"Peer performance {performance:.2f}x network average",
            f"Market saturation {saturation:.2f}",
        )

        raw = RawFactors(
            population=round(population, 1),
            anchor_count=round(anchor_total, 2),
            nearest_store_km=None if nearest is None else round(nearest, 3),
            peer_performance=None if performance is None else round(performance, 4),
            nearby_turnover=None if nearby_turnover is None else round(nearby_turnover, 2),
            saturation=round(saturation, 4),
            urban_density=density,
            landuse=landuse,
            area_class=area_class,
        )
        return ScoreResult(
            final_score=final,
            confidence=confidence,
            data_quality=quality,
            raw_factors=raw,
            subscores=subscores,
            weights=weights,
            is_white_space=is_white_space,
            explanation=explanation,
        )

    def score_candidate(self, candidate: Candidate) -> Candidate:
        result = self.score(candidate)
        return replace(
            candidate,
            score=result.final_score,
            confidence=result.confidence,
            data_quality=result.data_quality,
            raw_factors=result.raw_factors,
            is_white_space=result.is_white_space,
            explanation=result.explanation,
        )


def score_distribution(scores: Sequence[float]) -> Dict[str, Optional[float]]:
    values = sorted(float(s) for s in scores)
    if not values:
        return {"count": 0, "mean": None, "median": None, "std": None, "min": None, "max": None}
    n = len(values)
    mean = sum(values) / n
    mid = n // 2
    median = values[mid] if n % 2 else (values[mid - 1] + values[mid]) / 2.0
    std = math.sqrt(sum((v - mean) ** 2 for v in values) / n)
    return {
        "count": n,
        "mean": round(mean, 3),
        "median": round(median, 3),
        "std": round(std, 3),
        "min": round(values[0], 3),
        "max": round(values[-1], 3),
    }
