"""Records that flow between pipeline stages.

Every record is a frozen dataclass. Stages build new records with
dataclasses.replace() instead of mutating the ones they receive.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

FACTOR_NAMES = ("population", "coverage_gap", "anchors", "performance", "saturation")


@dataclass(frozen=True)
class ExistingStore:
    id: str
    lat: float
    lng: float
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    turnover: Optional[float] = None
    city_population_band: Optional[str] = None


@dataclass(frozen=True)
class Settlement:
    name: str
    lat: float
    lng: float
    kind: str = "town"
    population: Optional[int] = None
    region: Optional[str] = None
    city: Optional[str] = None


@dataclass(frozen=True)
class LandValidation:
    is_on_land: bool
    is_in_country: bool
    distance_to_coast_m: Optional[float] = None
    rejection_reason: Optional[str] = None
    fail_open: bool = False
    source: str = "polygon"

    @property
    def is_valid(self) -> bool:
        return self.is_on_land and self.is_in_country


@dataclass(frozen=True)
class UrbanValidation:
    is_suitable: bool
    urban_density_index: float = 0.0
    landuse_type: Optional[str] = None
    road_distance_m: Optional[float] = None
    building_distance_m: Optional[float] = None
    place_type: Optional[str] = None
    rejection_reason: Optional[str] = None


@dataclass(frozen=True)
class RawFactors:
    population: Optional[float] = None
    anchor_count: Optional[float] = None
    nearest_store_km: Optional[float] = None
    peer_performance: Optional[float] = None
    nearby_turnover: Optional[float] = None
    saturation: Optional[float] = None
    urban_density: float = 0.0
    landuse: Optional[str] = None
    area_class: Optional[str] = None


@dataclass(frozen=True)
class DataQuality:
    population_estimated: bool = True
    coverage_gap_estimated: bool = False
    anchors_estimated: bool = True
    performance_estimated: bool = True
    saturation_estimated: bool = False

    def flags(self) -> Dict[str, bool]:
        return {name: bool(getattr(self, f"{name}_estimated")) for name in FACTOR_NAMES}

    @property
    def completeness(self) -> float:
        flags = self.flags()
        measured = sum(1 for estimated in flags.values() if not estimated)
        return measured / len(flags)


@dataclass(frozen=True)
class Candidate:
    id: str
    lat: float
    lng: float
    cell: Optional[str] = None
    resolution: Optional[int] = None
    boundary: Optional[Tuple[Tuple[float, float], ...]] = None
    in_gap_zone: bool = False
    region: Optional[str] = None
    city: Optional[str] = None
    land: Optional[LandValidation] = None
    urban: Optional[UrbanValidation] = None
    raw_factors: RawFactors = field(default_factory=RawFactors)
    data_quality: DataQuality = field(default_factory=DataQuality)
    score: Optional[float] = None
    confidence: Optional[float] = None
    is_white_space: bool = False
    explanation: Tuple[str, ...] = ()
    flags: Tuple[str, ...] = ()
    rationale: Optional[str] = None
    rationale_source: Optional[str] = None

    @property
    def center(self) -> Tuple[float, float]:
        return (self.lat, self.lng)

    def with_flag(self, flag: str) -> "Candidate":
        if flag in self.flags:
            return self
        return replace(self, flags=self.flags + (flag,))


def candidate_to_row(candidate: Candidate) -> Dict[str, Any]:
    """Flatten a candidate into a JSON/CSV friendly dict."""
    factors = asdict(candidate.raw_factors)
    row: Dict[str, Any] = {
        "id": candidate.id,
        "lat": round(candidate.lat, 6),
        "lng": round(candidate.lng, 6),
        "cell": candidate.cell,
        "resolution": candidate.resolution,
        "region": candidate.region,
        "city": candidate.city,
        "score": None if candidate.score is None else round(candidate.score, 2),
        "confidence": None if candidate.confidence is None else round(candidate.confidence, 3),
        "completeness": round(candidate.data_quality.completeness, 3),
        "is_white_space": candidate.is_white_space,
        "in_gap_zone": candidate.in_gap_zone,
        "population": factors["population"],
        "anchor_count": factors["anchor_count"],
        "nearest_store_km": factors["nearest_store_km"],
        "peer_performance": factors["peer_performance"],
        "nearby_turnover": factors["nearby_turnover"],
        "saturation": factors["saturation"],
        "urban_density": factors["urban_density"],
        "landuse": factors["landuse"],
        "area_class": factors["area_class"],
        "estimated_factors": [k for k, v in candidate.data_quality.flags().items() if v],
        "flags": list(candidate.flags),
        "explanation": list(candidate.explanation),
        "rationale": candidate.rationale,
        "rationale_source": candidate.rationale_source,
    }
    if candidate.boundary:
        row["boundary"] = [[lat, lng] for lat, lng in candidate.boundary]
    return row


def order_by_score(candidates: List[Candidate]) -> List[Candidate]:
    """Score descending, ties by id ascending."""
    return sorted(candidates, key=lambda c: (-(c.score or 0.0), c.id))
