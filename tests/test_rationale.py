import requests

from siteselect.config import CostLimiterConfig
from siteselect.http import RequestMetrics
from siteselect.models import Candidate, RawFactors
from siteselect.rationale import (
    STATUS_HTTP_ERROR,
    STATUS_INVALID,
    STATUS_OK,
    STATUS_SKIPPED,
    GeminiRationaleClient,
    NoopRationaleClient,
    RationaleEnricher,
    RationaleResult,
    build_prompt,
    template_rationale,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.urls = []

    def post(self, url, json=None, timeout=None):
        self.urls.append(url)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def gemini_payload(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def make_candidate(cid="c1", score=70.0, **factors):
    defaults = dict(population=45000, anchor_count=6, nearest_store_km=12.0, nearby_turnover=600000, area_class="suburban")
    defaults.update(factors)
    return Candidate(id=cid, lat=51.5, lng=-0.1, city="Testville", region="South", score=score, confidence=0.8, raw_factors=RawFactors(**defaults))


def test_from_env_without_key_is_noop(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    client = GeminiRationaleClient.from_env()
    assert isinstance(client, NoopRationaleClient)
    assert client.generate("prompt").status == STATUS_SKIPPED


def test_generate_returns_text():
    client = GeminiRationaleClient(api_key="secret", session=FakeSession([FakeResponse(200, gemini_payload(" Good site. "))]))
    result = client.generate("prompt")
    assert result.ok
    assert result.text == "Good site."
    assert result.model == "gemini-2.5-flash"


def test_http_error_falls_through_model_chain():
    session = FakeSession([FakeResponse(503), FakeResponse(200, gemini_payload("Fallback model text"))])
    client = GeminiRationaleClient(api_key="secret", session=session)
    result = client.generate("prompt")
    assert result.ok
    assert result.model == "gemini-2.5-pro"
    assert len(session.urls) == 2


def test_request_errors_are_redacted():
    session = FakeSession([requests.ConnectionError("failed for key=secret") for _ in range(3)])
    client = GeminiRationaleClient(api_key="secret", session=session)
    result = client.generate("prompt")
    assert not result.ok
    assert "secret" not in (result.error or "")


def test_invalid_payload_is_not_retried():
    session = FakeSession([FakeResponse(200, {"candidates": []})])
    result = GeminiRationaleClient(api_key="k", session=session).generate("prompt")
    assert result.status == STATUS_INVALID
    assert len(session.urls) == 1


def test_template_rationale_bands():
    text = template_rationale(make_candidate(population=150000, nearest_store_km=20.0, anchor_count=12, nearby_turnover=900000))
    assert "Large population" in text
    assert "Significant service gap" in text
    assert "Strong commercial ecosystem" in text
    assert "High-performing" in text

    text = template_rationale(make_candidate(population=5000, nearest_store_km=None, anchor_count=1, nearby_turnover=None))
    assert "Smaller community" in text
    assert "No existing stores" in text


def test_prompt_mentions_estimated_factors():
    prompt = build_prompt(make_candidate())
    assert "Testville" in prompt
    assert "Estimated (not measured) factors" in prompt


class RecordingClient:
    def __init__(self, result):
        self.result = result
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        return self.result


def test_enricher_only_calls_ai_for_selected_subset():
    candidates = [make_candidate(cid=f"c{i}", score=float(i)) for i in range(10)]
    client = RecordingClient(RationaleResult(status=STATUS_OK, text="AI text", model="m1"))
    metrics = RequestMetrics()
    enriched, summary = RationaleEnricher(
        client, CostLimiterConfig(percentage=20.0, absolute_cap=60), metrics=metrics
    ).enrich(candidates)

    assert len(client.prompts) == 2
    assert summary["with_ai"] == 2
    assert metrics.network["ai"] == 2
    sources = {c.id: c.rationale_source for c in enriched}
    assert sources["c9"] == "ai:m1"
    assert sources["c8"] == "ai:m1"
    assert sources["c0"] == "template"
    assert [c.id for c in enriched] == [c.id for c in candidates]
    assert all(c.rationale for c in enriched)


def test_enricher_falls_back_to_template_on_failure():
    client = RecordingClient(RationaleResult(status=STATUS_HTTP_ERROR, error="http_error: 500"))
    metrics = RequestMetrics()
    enriched, summary = RationaleEnricher(client, CostLimiterConfig(enabled=False), metrics=metrics).enrich([make_candidate()])
    assert enriched[0].rationale_source == "template_fallback:http_error"
    assert enriched[0].rationale == template_rationale(make_candidate())
    assert summary["statuses"] == {STATUS_HTTP_ERROR: 1}
    assert metrics.failures["ai"] == 1


def test_enricher_without_api_key_uses_templates():
    enriched, summary = RationaleEnricher(NoopRationaleClient(), CostLimiterConfig()).enrich([make_candidate()])
    assert enriched[0].rationale_source == f"template_fallback:{STATUS_SKIPPED}"
    assert summary["statuses"] == {STATUS_SKIPPED: 1}
