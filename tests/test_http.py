import pytest
import requests

from siteselect import http as http_module
from siteselect.http import (
    BudgetExceededError,
    HttpClient,
    ProviderUnavailable,
    RateLimiter,
    RateLimitExceeded,
    RequestBudget,
    RequestMetrics,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.headers = headers or {}

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(("GET", url, params))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append(("POST", url, json))
        return self.responses.pop(0)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    slept = []
    monkeypatch.setattr(http_module.time, "sleep", lambda s: slept.append(s))
    return slept


def make_client(responses, retry_max=3):
    client = HttpClient(timeout=1, retry_max=retry_max, backoff_base=0.0, backoff_max=0.0)
    client.session = FakeSession(responses)
    return client


def test_retries_server_errors_then_succeeds():
    client = make_client([FakeResponse(503), FakeResponse(500), FakeResponse(200, {"ok": True})])
    assert client.get_json("https://example.test/a?token=secret") == {"ok": True}
    assert len(client.session.calls) == 3


def test_exhausted_429_raises_rate_limit_exceeded():
    client = make_client([FakeResponse(429), FakeResponse(429)], retry_max=2)
    with pytest.raises(RateLimitExceeded):
        client.get_json("https://example.test/a")


def test_exhausted_5xx_raises_provider_unavailable():
    client = make_client([FakeResponse(502), FakeResponse(502)], retry_max=2)
    with pytest.raises(ProviderUnavailable) as excinfo:
        client.get_json("https://example.test/a")
    assert not isinstance(excinfo.value, RateLimitExceeded)


def test_client_error_is_not_retried():
    client = make_client([FakeResponse(401), FakeResponse(200)])
    with pytest.raises(ProviderUnavailable):
        client.get_json("https://example.test/a")
    assert len(client.session.calls) == 1


def test_connection_errors_are_retried():
    client = make_client([requests.ConnectionError("boom"), FakeResponse(200, {"x": 1})])
    assert client.get_json("https://example.test/a") == {"x": 1}


def test_retry_after_header_is_honoured(no_sleep):
    client = HttpClient(timeout=1, retry_max=2, backoff_base=0.0, backoff_max=10.0)
    client.session = FakeSession([FakeResponse(429, headers={"Retry-After": "3"}), FakeResponse(200, {})])
    client.get_json("https://example.test/a")
    assert 3.0 in no_sleep


def test_non_json_body_is_provider_unavailable():
    client = make_client([FakeResponse(200, ValueError("not json"))])
    with pytest.raises(ProviderUnavailable):
        client.get_json("https://example.test/a")


def test_rate_limiter_token_bucket():
    now = [0.0]
    limiter = RateLimiter(per_minute=10, clock=lambda: now[0], sleep=lambda s: None)
    for _ in range(10):
        assert limiter.try_acquire("mapbox") == 0.0
    wait = limiter.try_acquire("mapbox")
    assert wait == pytest.approx(6.0)
    # A separate key has its own bucket.
    assert limiter.try_acquire("gemini") == 0.0
    now[0] += 7.0
    assert limiter.try_acquire("mapbox") == 0.0


def test_rate_limiter_acquire_sleeps_until_token():
    now = [0.0]
    sleeps = []

    def fake_sleep(seconds):
        sleeps.append(seconds)
        now[0] += seconds

    limiter = RateLimiter(per_minute=60, capacity=1, clock=lambda: now[0], sleep=fake_sleep)
    limiter.acquire()
    limiter.acquire()
    assert sleeps == [pytest.approx(1.0)]


def test_rate_limiter_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        RateLimiter(per_minute=0)


def test_budget_guard_counts_into_metrics():
    metrics = RequestMetrics()
    seen = []
    budget = RequestBudget(limits={"land": 2}, metrics=metrics, on_consume=lambda k, n: seen.append((k, n)))
    budget.consume("land")
    budget.consume("land")
    with pytest.raises(BudgetExceededError):
        budget.consume("land")
    budget.consume("urban")
    assert metrics.network["land"] == 2
    assert metrics.network["urban"] == 1
    assert seen == [("land", 1), ("land", 2), ("urban", 1)]


def test_metrics_hit_rate_and_unknown_kind():
    metrics = RequestMetrics()
    metrics.inc_network("urban")
    metrics.inc_cache_hit("urban")
    metrics.inc_cache_hit("urban")
    metrics.inc_cache_hit("urban")
    assert metrics.cache_hit_rate("urban") == 0.75
    assert metrics.as_dict()["cache_hit_rate"]["land"] == 0.0
    with pytest.raises(ValueError):
        metrics.inc_network("places")
