import random

import h3
import pytest

from siteselect.config import ExpansionConfig
from siteselect.geo import haversine_m, point_in_bbox
from siteselect.models import Settlement
from siteselect import tiling
from siteselect.tiling import (
    GAP_ZONE_INNER_FRACTION,
    SpatialTiler,
    Tile,
    analyze_settlement_proximity,
    calculate_tile_area,
    settlement_density_summary,
    tile_stats,
)

BBOX = {"lat_min": 51.0, "lat_max": 51.05, "lon_min": -0.1, "lon_max": 0.0}


def geometric_cfg(**kwargs):
    defaults = dict(resolution=8, adaptive_resolution=False, settlement_aware=False)
    defaults.update(kwargs)
    return ExpansionConfig(**defaults)


def test_determine_resolution_by_area():
    assert SpatialTiler.determine_resolution(200000) == 6
    assert SpatialTiler.determine_resolution(50000) == 7
    assert SpatialTiler.determine_resolution(500) == 8


def test_adaptive_resolution_coarsens_for_close_settlements():
    close = [Settlement(name=f"s{i}", lat=51.0 + i * 0.01, lng=-0.05) for i in range(5)]
    assert SpatialTiler.adaptive_resolution(BBOX, close) == 6
    sparse = {"lat_min": 50.0, "lat_max": 53.0, "lon_min": -3.0, "lon_max": 1.0}
    far = [Settlement(name="a", lat=50.1, lng=-2.9), Settlement(name="b", lat=52.9, lng=0.9)]
    assert SpatialTiler.adaptive_resolution(sparse, far) == 8


def test_geometric_tiles_cover_bbox_with_cell_centres_inside():
    tiler = SpatialTiler(geometric_cfg())
    result = tiler.generate_tiles(BBOX)
    assert result.mode == "geometric"
    assert result.resolution == 8
    assert len(result.tiles) > 20
    cells = [t.cell for t in result.tiles]
    assert len(cells) == len(set(cells))
    for tile in result.tiles:
        assert h3.get_resolution(tile.cell) == 8
        assert point_in_bbox(tile.lat, tile.lng, BBOX)
        assert len(tile.boundary) == 6


def test_region_smaller_than_a_hexagon_gets_one_tile():
    tiny = {"lat_min": 51.0, "lat_max": 51.0001, "lon_min": 0.0, "lon_max": 0.0001}
    tiler = SpatialTiler(geometric_cfg(resolution=6))
    result = tiler.generate_tiles(tiny)
    assert len(result.tiles) == 1


def test_max_tiles_coarsens_resolution():
    tiler = SpatialTiler(geometric_cfg(max_tiles=10))
    result = tiler.generate_tiles(BBOX)
    assert result.resolution <= 7
    assert len(result.tiles) <= 10


def test_settlement_aware_tiles_lie_in_gap_zone():
    centre = Settlement(name="Town", lat=51.025, lng=-0.05, kind="town")
    cfg = ExpansionConfig(resolution=8, adaptive_resolution=False, gap_focus_radius_m=3000)
    full = SpatialTiler(geometric_cfg()).generate_tiles(BBOX)
    result = SpatialTiler(cfg).generate_tiles(BBOX, [centre])

    assert result.mode == "settlement_aware"
    assert 0 < len(result.tiles) < len(full.tiles)
    assert result.gap_tiles + result.supplement_tiles == len(result.tiles)
    for tile in result.tiles:
        distance = haversine_m(tile.lat, tile.lng, centre.lat, centre.lng)
        assert tile.nearest_settlement_m == pytest.approx(distance)
        if tile.in_gap_zone:
            assert 900 <= distance <= 3000
        else:
            assert distance <= 4500


def test_settlement_aware_supplements_with_small_settlements():
    village = Settlement(name="Village", lat=51.025, lng=-0.05, kind="village")
    cfg = ExpansionConfig(
        resolution=8, adaptive_resolution=False, gap_focus_radius_m=20000, gap_cell_target=5
    )
    result = SpatialTiler(cfg).generate_tiles(BBOX, [village])
    # Every tile is inside 0.3R of the village, so all selected tiles are supplements.
    assert result.gap_tiles == 0
    assert result.supplement_tiles == 5
    distances = [t.nearest_settlement_m for t in result.tiles]
    assert distances == sorted(distances)


def test_without_settlements_falls_back_to_geometric():
    cfg = ExpansionConfig(resolution=8, adaptive_resolution=False)
    result = SpatialTiler(cfg).generate_tiles(BBOX, [])
    assert result.mode == "geometric_fallback"


def test_sample_points_are_bounded_and_seeded():
    cfg = geometric_cfg(samples_per_tile=3)
    tile = SpatialTiler(cfg).generate_tiles(BBOX).tiles[0]

    first = SpatialTiler(cfg, rng=random.Random(7)).sample_points(tile)
    second = SpatialTiler(cfg, rng=random.Random(7)).sample_points(tile)
    assert first == second
    assert len(first) == 3
    assert first[0] == (0, tile.lat, tile.lng)
    for _, lat, lng in first:
        assert h3.latlng_to_cell(lat, lng, tile.resolution) == tile.cell


def test_sample_points_prefer_provisional_score():
    cfg = geometric_cfg(samples_per_tile=2)
    tiler = SpatialTiler(cfg)
    tile = tiler.generate_tiles(BBOX).tiles[0]
    every = SpatialTiler(geometric_cfg(samples_per_tile=50)).sample_points(tile)
    best_two = sorted(every, key=lambda p: -p[1])[:2]

    chosen = tiler.sample_points(tile, provisional_score=lambda lat, lng: lat)
    assert sorted(chosen) == sorted(best_two)


def test_generate_candidates_ids_and_geometry():
    cfg = geometric_cfg(samples_per_tile=2)
    tiler = SpatialTiler(cfg)
    tiling = tiler.generate_tiles(BBOX)
    candidates = tiler.generate_candidates(tiling)
    assert len(candidates) == 2 * len(tiling.tiles)
    ids = [c.id for c in candidates]
    assert len(ids) == len(set(ids))
    assert all(c.id.startswith(c.cell) for c in candidates)


def test_tile_stats_and_area():
    assert calculate_tile_area(8) == 0.74
    assert calculate_tile_area(5) > calculate_tile_area(6)
    stats = tile_stats([], 7)
    assert stats["tile_count"] == 0
    assert stats["area_per_tile_km2"] == 5.16


def test_settlement_proximity_analysis():
    settlements = [Settlement(name="Town", lat=51.025, lng=-0.05)]
    analysis = analyze_settlement_proximity(BBOX, settlements, grid_step_deg=0.01)
    stats = analysis["stats"]
    assert stats["total_points"] == len(analysis["coverage_map"])
    assert stats["dense_points"] > 0
    assert stats["gap_points"] == 0
    summary = settlement_density_summary(settlements, BBOX)
    assert summary["settlements"] == 1
    assert summary["avg_pairwise_km"] == 0.0


def test_gap_zone_excludes_inner_boundary_and_includes_outer(monkeypatch):
    radius = 10000.0
    inner = radius * GAP_ZONE_INNER_FRACTION
    distances = {"at_inner": inner, "just_outside_inner": inner + 1.0, "at_radius": radius, "beyond": radius + 1.0}
    town = Settlement(name="Town", lat=51.0, lng=0.0, kind="city")
    monkeypatch.setattr(tiling, "_nearest_settlement", lambda lat, lng, settlements: (distances[tiles_by_pos[(lat, lng)]], town))

    tiles = [Tile(cell=name, lat=51.0 + i * 0.01, lng=0.0, resolution=8) for i, name in enumerate(distances)]
    tiles_by_pos = {(t.lat, t.lng): t.cell for t in tiles}
    tiler = SpatialTiler(ExpansionConfig(gap_focus_radius_m=radius, gap_cell_target=0))
    selected, gap_count, supplement_count = tiler.settlement_aware_tiles(tiles, [town])

    assert sorted(t.cell for t in selected) == ["at_radius", "just_outside_inner"]
    assert gap_count == 2
    assert supplement_count == 0
    assert all(t.in_gap_zone for t in selected)
