"""Adapters for external collaborators.

Provider-specific payloads are decoded here into plain records; the rest of
the package only sees TileFeature, ExistingStore, Settlement and shapely
geometries.
"""
from __future__ import annotations

import csv
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shapely.geometry import shape
from shapely.geometry.base import BaseGeometry

from . import config
from .http import BudgetExceededError, HttpClient, ProviderUnavailable, RequestBudget
from .models import ExistingStore, Settlement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TileFeature:
    layer: str
    feature_class: Optional[str] = None
    feature_type: Optional[str] = None
    geometry_type: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    distance_m: Optional[float] = None


@dataclass(frozen=True)
class TilequeryResponse:
    features: Tuple[TileFeature, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict)

    def in_layer(self, layer: str) -> List[TileFeature]:
        return [f for f in self.features if f.layer == layer]


def _float_or_none(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def decode_tile_feature(feature: Dict[str, Any]) -> Optional[TileFeature]:
    props = feature.get("properties") or {}
    tq = props.get("tilequery") or {}
    layer = tq.get("layer")
    if not layer:
        return None
    geometry = feature.get("geometry") or {}
    lat = lng = None
    coords = geometry.get("coordinates")
    if geometry.get("type") == "Point" and isinstance(coords, (list, tuple)) and len(coords) >= 2:
        lng, lat = _float_or_none(coords[0]), _float_or_none(coords[1])
    return TileFeature(
        layer=str(layer),
        feature_class=props.get("class"),
        feature_type=props.get("type"),
        geometry_type=tq.get("geometry"),
        lat=lat,
        lng=lng,
        distance_m=_float_or_none(tq.get("distance")),
    )


def decode_tilequery_response(payload: Dict[str, Any]) -> TilequeryResponse:
    features = []
    for raw in payload.get("features") or []:
        if not isinstance(raw, dict):
            continue
        decoded = decode_tile_feature(raw)
        if decoded is not None:
            features.append(decoded)
    return TilequeryResponse(features=tuple(features), raw=payload)


class TilequeryClient:
    """Mapbox Tilequery adapter: query(lat, lng, radius_m, layers)."""

    def __init__(
        self,
        http_client: HttpClient,
        access_token: str,
        kind: str,
        budget: Optional[RequestBudget] = None,
        tileset: str = config.MAPBOX_STREETS_TILESET,
        limit: int = config.TILEQUERY_LIMIT,
    ) -> None:
        self.http = http_client
        self.access_token = access_token
        self.kind = kind
        self.budget = budget
        self.tileset = tileset
        self.limit = limit

    def query(self, lat: float, lng: float, radius_m: float, layers: str) -> TilequeryResponse:
        if self.budget is not None:
            try:
                self.budget.consume(self.kind)
            except BudgetExceededError as exc:
                raise ProviderUnavailable(str(exc)) from exc
        url = config.MAPBOX_TILEQUERY_URL_TEMPLATE.format(
            tileset=self.tileset, lng=f"{lng:.6f}", lat=f"{lat:.6f}"
        )
        params = {
            "radius": int(round(radius_m)),
            "layers": layers,
            "limit": self.limit,
            "access_token": self.access_token,
        }
        payload = self.http.get_json(url, params=params, limiter_key=f"mapbox:{self.kind}")
        if not isinstance(payload, dict):
            raise ProviderUnavailable("Tilequery returned a non-object payload")
        return decode_tilequery_response(payload)


def mapbox_token_from_env() -> Optional[str]:
    token = (os.environ.get("MAPBOX_ACCESS_TOKEN") or os.environ.get("NEXT_PUBLIC_MAPBOX_TOKEN") or "").strip()
    return token or None


# --- Stores ---


@dataclass(frozen=True)
class StoreFilter:
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None

    def matches(self, store: ExistingStore) -> bool:
        for attr in ("country", "region", "city"):
            wanted = getattr(self, attr)
            if wanted and (getattr(store, attr) or "").strip().lower() != wanted.strip().lower():
                return False
        return True


def store_from_dict(row: Dict[str, Any]) -> Optional[ExistingStore]:
    lat = _float_or_none(row.get("lat", row.get("latitude")))
    lng = _float_or_none(row.get("lng", row.get("lon", row.get("longitude"))))
    if lat is None or lng is None:
        return None
    store_id = str(row.get("id") or row.get("store_id") or f"{lat:.5f},{lng:.5f}")
    turnover = _float_or_none(row.get("turnover", row.get("annual_turnover")))
    return ExistingStore(
        id=store_id,
        lat=lat,
        lng=lng,
        city=(row.get("city") or None),
        region=(row.get("region") or row.get("state") or None),
        country=(row.get("country") or None),
        turnover=turnover,
        city_population_band=(row.get("city_population_band") or None),
    )


class JsonStoreSource:
    def __init__(self, path: str) -> None:
        self.path = path

    def _rows(self) -> Iterable[Dict[str, Any]]:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("stores") or []
        return [r for r in data if isinstance(r, dict)]

    def list_stores(self, store_filter: Optional[StoreFilter] = None) -> List[ExistingStore]:
        store_filter = store_filter or StoreFilter()
        stores = []
        skipped = 0
        for row in self._rows():
            store = store_from_dict(row)
            if store is None:
                skipped += 1
                continue
            if store_filter.matches(store):
                stores.append(store)
        if skipped:
            logger.warning("Skipped %s stores without coordinates in %s", skipped, self.path)
        return stores


class CsvStoreSource(JsonStoreSource):
    def _rows(self) -> Iterable[Dict[str, Any]]:
        with open(self.path, "r", encoding="utf-8", newline="") as f:
            return list(csv.DictReader(f))


def open_store_source(path: str) -> JsonStoreSource:
    if Path(path).suffix.lower() == ".csv":
        return CsvStoreSource(path)
    return JsonStoreSource(path)


# --- Settlements ---


def settlement_from_dict(row: Dict[str, Any]) -> Optional[Settlement]:
    lat = _float_or_none(row.get("lat", row.get("latitude")))
    lng = _float_or_none(row.get("lng", row.get("lon", row.get("longitude"))))
    if lat is None or lng is None:
        return None
    population = _float_or_none(row.get("population"))
    return Settlement(
        name=str(row.get("name") or f"{lat:.4f},{lng:.4f}"),
        lat=lat,
        lng=lng,
        kind=str(row.get("kind") or row.get("type") or "town").lower(),
        population=int(population) if population is not None else None,
        region=(row.get("region") or row.get("state") or None),
        city=(row.get("city") or row.get("name") or None),
    )


def load_settlements(path: str) -> List[Settlement]:
    if Path(path).suffix.lower() == ".csv":
        with open(path, "r", encoding="utf-8", newline="") as f:
            rows: List[Any] = list(csv.DictReader(f))
    else:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        rows = data.get("settlements", []) if isinstance(data, dict) else data
    settlements = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        settlement = settlement_from_dict(row)
        if settlement is not None:
            settlements.append(settlement)
    return settlements


# --- Country boundary ---


def load_country_geometry(path: str) -> BaseGeometry:
    """Load a country outline from GeoJSON (geometry, Feature or FeatureCollection)."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    kind = data.get("type")
    if kind == "FeatureCollection":
        geoms = [shape(feat["geometry"]) for feat in data.get("features", []) if feat.get("geometry")]
        if not geoms:
            raise ValueError(f"No geometries in {path}")
        merged = geoms[0]
        for geom in geoms[1:]:
            merged = merged.union(geom)
        return merged
    if kind == "Feature":
        return shape(data["geometry"])
    return shape(data)
