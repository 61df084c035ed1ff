import json

import pytest

from siteselect import config
from siteselect.http import BudgetExceededError, ProviderUnavailable, RequestBudget
from siteselect.providers import (
    StoreFilter,
    TilequeryClient,
    decode_tilequery_response,
    load_country_geometry,
    load_settlements,
    mapbox_token_from_env,
    open_store_source,
)


class FakeHttpClient:
    def __init__(self, payload):
        self.payload = payload
        self.calls = []

    def get_json(self, url, params=None, headers=None, limiter_key="default"):
        self.calls.append((url, params, limiter_key))
        return self.payload


def test_decode_tilequery_response_skips_unlayered_features():
    payload = {
        "features": [
            {
                "geometry": {"type": "Point", "coordinates": [-0.1, 51.5]},
                "properties": {"class": "street", "type": "residential", "tilequery": {"layer": "road", "distance": 12.5}},
            },
            {"properties": {"class": "orphan"}},
            "not-a-feature",
        ]
    }
    response = decode_tilequery_response(payload)
    assert len(response.features) == 1
    road = response.in_layer("road")[0]
    assert (road.lat, road.lng) == (51.5, -0.1)
    assert road.distance_m == 12.5
    assert road.feature_type == "residential"


def test_tilequery_client_builds_request_and_consumes_budget():
    http = FakeHttpClient({"features": []})
    budget = RequestBudget(limits={"urban": 1})
    client = TilequeryClient(http, "tok", "urban", budget=budget)
    client.query(51.5, -0.1, 150, config.URBAN_TILEQUERY_LAYERS)

    url, params, key = http.calls[0]
    assert url.endswith("/tilequery/-0.100000,51.500000.json")
    assert params["radius"] == 150
    assert params["layers"] == "road,building,place,landuse"
    assert params["access_token"] == "tok"
    assert key == "mapbox:urban"

    with pytest.raises(ProviderUnavailable) as excinfo:
        client.query(51.5, -0.1, 150, config.URBAN_TILEQUERY_LAYERS)
    assert isinstance(excinfo.value.__cause__, BudgetExceededError)
    assert len(http.calls) == 1


def test_tilequery_client_rejects_non_object_payload():
    client = TilequeryClient(FakeHttpClient(["nope"]), "tok", "land")
    with pytest.raises(ProviderUnavailable):
        client.query(0.0, 0.0, 10, "water")


def test_mapbox_token_from_env(monkeypatch):
    monkeypatch.delenv("MAPBOX_ACCESS_TOKEN", raising=False)
    monkeypatch.delenv("NEXT_PUBLIC_MAPBOX_TOKEN", raising=False)
    assert mapbox_token_from_env() is None
    monkeypatch.setenv("NEXT_PUBLIC_MAPBOX_TOKEN", " pk.abc ")
    assert mapbox_token_from_env() == "pk.abc"


def test_json_store_source_with_filter(tmp_path):
    path = tmp_path / "stores.json"
    path.write_text(
        json.dumps(
            {
                "stores": [
                    {"id": "a", "lat": 51.5, "lng": -0.1, "city": "London", "region": "England", "country": "UK", "turnover": "1200000"},
                    {"id": "b", "latitude": 55.9, "longitude": -3.2, "city": "Edinburgh", "state": "Scotland", "country": "UK"},
                    {"id": "c", "city": "Nowhere"},
                ]
            }
        ),
        encoding="utf-8",
    )
    source = open_store_source(str(path))
    stores = source.list_stores()
    assert [s.id for s in stores] == ["a", "b"]
    assert stores[0].turnover == 1200000.0
    assert stores[1].region == "Scotland"

    scottish = source.list_stores(StoreFilter(region="scotland"))
    assert [s.id for s in scottish] == ["b"]


def test_csv_store_source(tmp_path):
    path = tmp_path / "stores.csv"
    path.write_text("id,lat,lon,city,region,turnover\nx,52.0,1.0,Ipswich,East,\n", encoding="utf-8")
    stores = open_store_source(str(path)).list_stores()
    assert len(stores) == 1
    assert stores[0].lng == 1.0
    assert stores[0].turnover is None


def test_load_settlements_json_and_csv(tmp_path):
    json_path = tmp_path / "settlements.json"
    json_path.write_text(
        json.dumps([{"name": "Alpha", "lat": 51.0, "lng": 0.0, "kind": "Village", "population": "1200"}]),
        encoding="utf-8",
    )
    settlements = load_settlements(str(json_path))
    assert settlements[0].kind == "village"
    assert settlements[0].population == 1200
    assert settlements[0].city == "Alpha"

    csv_path = tmp_path / "settlements.csv"
    csv_path.write_text("name,lat,lng,type\nBeta,52.0,1.0,city\n", encoding="utf-8")
    assert load_settlements(str(csv_path))[0].kind == "city"


def test_load_country_geometry_feature_collection(tmp_path):
    path = tmp_path / "country.geojson"
    square = lambda x0: {"type": "Polygon", "coordinates": [[[x0, 0], [x0 + 1, 0], [x0 + 1, 1], [x0, 1], [x0, 0]]]}
    path.write_text(
        json.dumps(
            {
                "type": "FeatureCollection",
                "features": [
                    {"type": "Feature", "geometry": square(0), "properties": {}},
                    {"type": "Feature", "geometry": square(1), "properties": {}},
                ],
            }
        ),
        encoding="utf-8",
    )
    geometry = load_country_geometry(str(path))
    assert geometry.area == pytest.approx(2.0)

    empty = tmp_path / "empty.geojson"
    empty.write_text(json.dumps({"type": "FeatureCollection", "features": []}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_country_geometry(str(empty))
