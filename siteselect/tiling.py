"""Hexagonal tiling of a region and per-tile candidate sampling."""
from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import h3

from .config import ExpansionConfig
from .geo import average_pairwise_distance_km, bbox_area_km2, haversine_km, haversine_m
from .models import Candidate, Settlement

logger = logging.getLogger(__name__)

# Approximate hexagon area per resolution, km^2
TILE_AREA_KM2 = {6: 36.13, 7: 5.16, 8: 0.74, 9: 0.11}

SMALL_SETTLEMENT_KINDS = frozenset({"town", "village"})
GAP_ZONE_INNER_FRACTION = 0.3
SUPPLEMENT_RADIUS_FACTOR = 1.5
DEFAULT_AVG_DISTANCE_KM = 50.0
PAIRS_PER_SETTLEMENT = 9

ProvisionalScore = Callable[[float, float], float]


@dataclass(frozen=True)
class Tile:
    cell: str
    lat: float
    lng: float
    resolution: int
    boundary: Tuple[Tuple[float, float], ...] = ()
    in_gap_zone: bool = False
    nearest_settlement_m: Optional[float] = None


@dataclass(frozen=True)
class TilingResult:
    tiles: Tuple[Tile, ...]
    resolution: int
    mode: str
    gap_tiles: int = 0
    supplement_tiles: int = 0


def calculate_tile_area(resolution: int) -> float:
    if resolution in TILE_AREA_KM2:
        return TILE_AREA_KM2[resolution]
    return float(h3.average_hexagon_area(resolution, unit="km^2"))


def tile_stats(tiles: Sequence[Tile], resolution: int) -> Dict[str, Any]:
    area_per_tile = calculate_tile_area(resolution)
    return {
        "tile_count": len(tiles),
        "resolution": resolution,
        "area_per_tile_km2": area_per_tile,
        "total_area_km2": round(len(tiles) * area_per_tile),
        "avg_tile_spacing_km": round(math.sqrt(area_per_tile), 3),
    }


def _nearest_settlement(lat: float, lng: float, settlements: Sequence[Settlement]) -> Tuple[float, Optional[Settlement]]:
    best = math.inf
    nearest = None
    for s in settlements:
        d = haversine_m(lat, lng, s.lat, s.lng)
        if d < best:
            best = d
            nearest = s
    return best, nearest


class SpatialTiler:
    def __init__(self, cfg: ExpansionConfig, rng: Optional[random.Random] = None) -> None:
        self.cfg = cfg
        self.rng = rng or random.Random(cfg.seed)

    # --- resolution ---

    @staticmethod
    def determine_resolution(area_km2: float) -> int:
        if area_km2 > 100000:
            return 6
        if area_km2 > 10000:
            return 7
        return 8

    @staticmethod
    def adaptive_resolution(bbox: Dict[str, float], settlements: Sequence[Settlement]) -> int:
        """Coarser hexes where settlements are dense or close together."""
        area = max(bbox_area_km2(bbox), 1e-9)
        density = len(settlements) / area

        total = 0.0
        pairs = 0
        for i in range(len(settlements)):
            for j in range(i + 1, min(len(settlements), i + 1 + PAIRS_PER_SETTLEMENT)):
                a, b = settlements[i], settlements[j]
                total += haversine_km(a.lat, a.lng, b.lat, b.lng)
                pairs += 1
        avg_distance = total / pairs if pairs else DEFAULT_AVG_DISTANCE_KM

        if density > 0.5 or avg_distance < 10:
            return 6
        if density > 0.1 or avg_distance < 25:
            return 7
        return 8

    def choose_resolution(self, bbox: Dict[str, float], settlements: Sequence[Settlement]) -> int:
        if self.cfg.adaptive_resolution and settlements:
            resolution = self.adaptive_resolution(bbox, settlements)
        elif self.cfg.resolution is not None:
            resolution = int(self.cfg.resolution)
        else:
            resolution = self.determine_resolution(bbox_area_km2(bbox))
        return self._fit_max_tiles(bbox, resolution)

    def _fit_max_tiles(self, bbox: Dict[str, float], resolution: int) -> int:
        area = bbox_area_km2(bbox)
        original = resolution
        while resolution > 0 and area / calculate_tile_area(resolution) > self.cfg.max_tiles:
            resolution -= 1
        if resolution != original:
            logger.info(
                "Coarsened H3 resolution %s -> %s to stay under %s tiles",
                original,
                resolution,
                self.cfg.max_tiles,
            )
        return resolution

    # --- tiles ---

    def geometric_tiles(self, bbox: Dict[str, float], resolution: int) -> List[Tile]:
        outer = [
            (bbox["lat_min"], bbox["lon_min"]),
            (bbox["lat_min"], bbox["lon_max"]),
            (bbox["lat_max"], bbox["lon_max"]),
            (bbox["lat_max"], bbox["lon_min"]),
        ]
        cells = sorted(h3.h3shape_to_cells(h3.LatLngPoly(outer), resolution))
        if not cells:
            # Region smaller than one hexagon
            mid_lat = (bbox["lat_min"] + bbox["lat_max"]) / 2.0
            mid_lng = (bbox["lon_min"] + bbox["lon_max"]) / 2.0
            cells = [h3.latlng_to_cell(mid_lat, mid_lng, resolution)]
        tiles = []
        for cell in cells:
            lat, lng = h3.cell_to_latlng(cell)
            tiles.append(
                Tile(
                    cell=cell,
                    lat=lat,
                    lng=lng,
                    resolution=resolution,
                    boundary=tuple((float(a), float(b)) for a, b in h3.cell_to_boundary(cell)),
                )
            )
        return tiles

    def settlement_aware_tiles(
        self, tiles: Sequence[Tile], settlements: Sequence[Settlement]
    ) -> Tuple[List[Tile], int, int]:
        radius = float(self.cfg.gap_focus_radius_m)
        inner = radius * GAP_ZONE_INNER_FRACTION

        gap: List[Tile] = []
        others: List[Tuple[float, Tile, Optional[Settlement]]] = []
        for tile in tiles:
            distance, nearest = _nearest_settlement(tile.lat, tile.lng, settlements)
            if inner < distance <= radius:
                gap.append(replace(tile, in_gap_zone=True, nearest_settlement_m=distance))
            else:
                others.append((distance, tile, nearest))

        supplement: List[Tile] = []
        target = int(self.cfg.gap_cell_target)
        if len(gap) < target:
            eligible = [
                (distance, tile)
                for distance, tile, nearest in others
                if nearest is not None
                and nearest.kind in SMALL_SETTLEMENT_KINDS
                and distance <= radius * SUPPLEMENT_RADIUS_FACTOR
            ]
            eligible.sort(key=lambda item: (item[0], item[1].cell))
            for distance, tile in eligible[: target - len(gap)]:
                supplement.append(replace(tile, nearest_settlement_m=distance))

        return gap + supplement, len(gap), len(supplement)

    def generate_tiles(self, bbox: Dict[str, float], settlements: Optional[Sequence[Settlement]] = None) -> TilingResult:
        settlements = list(settlements or [])
        resolution = self.choose_resolution(bbox, settlements)
        tiles = self.geometric_tiles(bbox, resolution)
        while len(tiles) > self.cfg.max_tiles and resolution > 0:
            resolution -= 1
            tiles = self.geometric_tiles(bbox, resolution)

        if not self.cfg.settlement_aware:
            return TilingResult(tiles=tuple(tiles), resolution=resolution, mode="geometric")
        if not settlements:
            logger.info("No settlements supplied; using plain geometric tiling")
            return TilingResult(tiles=tuple(tiles), resolution=resolution, mode="geometric_fallback")

        selected, gap_count, supplement_count = self.settlement_aware_tiles(tiles, settlements)
        if not selected:
            logger.info("No tiles in the settlement gap zone; using plain geometric tiling")
            return TilingResult(tiles=tuple(tiles), resolution=resolution, mode="geometric_fallback")
        logger.info(
            "Settlement-aware tiling: %s of %s tiles kept (gap=%s supplement=%s)",
            len(selected),
            len(tiles),
            gap_count,
            supplement_count,
        )
        return TilingResult(
            tiles=tuple(selected),
            resolution=resolution,
            mode="settlement_aware",
            gap_tiles=gap_count,
            supplement_tiles=supplement_count,
        )

    # --- sampling ---

    def sample_points(
        self, tile: Tile, provisional_score: Optional[ProvisionalScore] = None
    ) -> List[Tuple[int, float, float]]:
        """Up to samples_per_tile (index, lat, lng) points inside the tile.

        Index 0 is the cell centre; the others are centres of the child cells
        one resolution finer.
        """
        points: List[Tuple[int, float, float]] = [(0, tile.lat, tile.lng)]
        if tile.resolution < 15:
            children = sorted(c for c in h3.cell_to_children(tile.cell, tile.resolution + 1))
            child_points = []
            for child in children:
                lat, lng = h3.cell_to_latlng(child)
                if haversine_m(lat, lng, tile.lat, tile.lng) < 1.0:
                    continue
                child_points.append((lat, lng))
            for i, (lat, lng) in enumerate(child_points, start=1):
                points.append((i, lat, lng))

        limit = max(1, int(self.cfg.samples_per_tile))
        if len(points) <= limit:
            return points
        if provisional_score is not None:
            ranked = sorted(points, key=lambda p: (-provisional_score(p[1], p[2]), p[0]))
            return sorted(ranked[:limit])
        return [points[0]] + sorted(self.rng.sample(points[1:], limit - 1))

    def generate_candidates(
        self, tiling: TilingResult, provisional_score: Optional[ProvisionalScore] = None
    ) -> List[Candidate]:
        candidates = []
        for tile in tiling.tiles:
            for index, lat, lng in self.sample_points(tile, provisional_score):
                candidates.append(
                    Candidate(
                        id=f"{tile.cell}-{index}",
                        lat=lat,
                        lng=lng,
                        cell=tile.cell,
                        resolution=tile.resolution,
                        boundary=tile.boundary,
                        in_gap_zone=tile.in_gap_zone,
                    )
                )
        return candidates


def analyze_settlement_proximity(
    bbox: Dict[str, float],
    settlements: Sequence[Settlement],
    grid_step_deg: float = 0.01,
    max_points: int = 40000,
) -> Dict[str, Any]:
    """Classify a ~1 km grid by distance to the nearest settlement."""
    lat_span = bbox["lat_max"] - bbox["lat_min"]
    lon_span = bbox["lon_max"] - bbox["lon_min"]
    step = grid_step_deg
    while (lat_span / step + 1) * (lon_span / step + 1) > max_points:
        step *= 2

    coverage_map = []
    gap_areas = []
    counts = {"dense": 0, "moderate": 0, "sparse": 0, "gap": 0}
    total_distance = 0.0
    rows = int(math.floor(lat_span / step)) + 1
    cols = int(math.floor(lon_span / step)) + 1
    for r in range(rows):
        lat = bbox["lat_min"] + r * step
        for c in range(cols):
            lng = bbox["lon_min"] + c * step
            distance, _ = _nearest_settlement(lat, lng, settlements)
            if distance < 2000:
                coverage = "dense"
            elif distance < 5000:
                coverage = "moderate"
            elif distance < 10000:
                coverage = "sparse"
            else:
                coverage = "gap"
            counts[coverage] += 1
            if math.isfinite(distance):
                total_distance += distance
            coverage_map.append({"lat": lat, "lng": lng, "nearest_distance_m": distance, "coverage": coverage})
            if coverage == "gap":
                gap_areas.append({"lat": lat, "lng": lng, "gap_size_m": distance})

    total = len(coverage_map)
    return {
        "coverage_map": coverage_map,
        "gap_areas": gap_areas,
        "stats": {
            "grid_step_deg": step,
            "total_points": total,
            "dense_points": counts["dense"],
            "moderate_points": counts["moderate"],
            "sparse_points": counts["sparse"],
            "gap_points": counts["gap"],
            "average_distance_m": (total_distance / total) if total and settlements else None,
        },
    }


def settlement_density_summary(settlements: Sequence[Settlement], bbox: Dict[str, float]) -> Dict[str, Any]:
    area = bbox_area_km2(bbox)
    return {
        "settlements": len(settlements),
        "area_km2": round(area, 1),
        "per_km2": round(len(settlements) / area, 5) if area else None,
        "avg_pairwise_km": round(average_pairwise_distance_km([(s.lat, s.lng) for s in settlements]), 2),
    }
