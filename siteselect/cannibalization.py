"""Anti-cannibalization: distance floor, per-city cap and drive-time NMS."""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config import ExpansionConfig
from .geo import haversine_km
from .models import Candidate, ExistingStore, order_by_score

logger = logging.getLogger(__name__)


@dataclass
class FilterDiagnostics:
    input_count: int = 0
    too_close_to_store: int = 0
    city_cap: int = 0
    nms_suppressed: int = 0
    output_count: int = 0
    suppressed_by: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, int]:
        return {
            "input_count": self.input_count,
            "too_close_to_store": self.too_close_to_store,
            "city_cap": self.city_cap,
            "nms_suppressed": self.nms_suppressed,
            "output_count": self.output_count,
        }


def nearest_store_distance_km(candidate: Candidate, stores: Sequence[ExistingStore]) -> Optional[float]:
    if not stores:
        return None
    return min(haversine_km(candidate.lat, candidate.lng, s.lat, s.lng) for s in stores)


def apply_min_distance(
    candidates: Sequence[Candidate], stores: Sequence[ExistingStore], min_distance_km: float
) -> List[Candidate]:
    if min_distance_km <= 0 or not stores:
        return list(candidates)
    kept = []
    for candidate in candidates:
        distance = nearest_store_distance_km(candidate, stores)
        if distance is None or distance >= min_distance_km:
            kept.append(candidate)
    return kept


def apply_city_cap(candidates: Sequence[Candidate], max_per_city: Optional[int]) -> List[Candidate]:
    """Keep the top max_per_city by score within each city.

    Candidates with no city are not capped. Input order is preserved.
    """
    if not max_per_city:
        return list(candidates)
    by_city: Dict[str, List[Candidate]] = defaultdict(list)
    for candidate in candidates:
        if candidate.city:
            by_city[candidate.city.strip().lower()].append(candidate)
    allowed = set()
    for group in by_city.values():
        for candidate in order_by_score(group)[: int(max_per_city)]:
            allowed.add(candidate.id)
    return [c for c in candidates if not c.city or c.id in allowed]


def drive_time_nms(
    candidates: Sequence[Candidate],
    radius_km: float,
    suppressed_by: Optional[Dict[str, str]] = None,
) -> List[Candidate]:
    """Greedy suppression in score order; returns survivors in score order."""
    ranked = order_by_score(list(candidates))
    if radius_km <= 0:
        return ranked
    kept: List[Candidate] = []
    for candidate in ranked:
        blocker = None
        for selected in kept:
            if haversine_km(candidate.lat, candidate.lng, selected.lat, selected.lng) < radius_km:
                blocker = selected
                break
        if blocker is None:
            kept.append(candidate)
        elif suppressed_by is not None:
            suppressed_by[candidate.id] = blocker.id
    return kept


class AntiCannibalizationFilter:
    def __init__(self, cfg: ExpansionConfig) -> None:
        self.cfg = cfg
        self.last_diagnostics = FilterDiagnostics()

    def filter(
        self,
        candidates: Sequence[Candidate],
        stores: Sequence[ExistingStore],
        apply_nms: bool = True,
    ) -> List[Candidate]:
        diag = FilterDiagnostics(input_count=len(candidates))

        step1 = apply_min_distance(candidates, stores, self.cfg.min_distance_km)
        diag.too_close_to_store = len(candidates) - len(step1)

        step2 = apply_city_cap(step1, self.cfg.max_per_city)
        diag.city_cap = len(step1) - len(step2)

        if apply_nms:
            step3 = drive_time_nms(step2, self.cfg.nms_radius_km, diag.suppressed_by)
        else:
            step3 = order_by_score(step2)
        diag.nms_suppressed = len(step2) - len(step3)
        diag.output_count = len(step3)

        logger.info(
            "Anti-cannibalization: in=%s too_close=%s city_cap=%s nms=%s out=%s",
            diag.input_count,
            diag.too_close_to_store,
            diag.city_cap,
            diag.nms_suppressed,
            diag.output_count,
        )
        self.last_diagnostics = diag
        return step3
