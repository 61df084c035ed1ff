"""Candidate rationale: Gemini for the enrichment subset, templates for the rest.

A missing GEMINI_API_KEY never fails a run. The client degrades to a no-op
that reports a skipped status and the template text is used instead.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from .config import CostLimiterConfig
from .cost_limiter import select_for_enrichment
from .http import RequestMetrics
from .models import Candidate

logger = logging.getLogger(__name__)

GEMINI_API_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_TIMEOUT_SECONDS = 60
DEFAULT_MODEL_CHAIN = [
    "gemini-2.5-flash",
    "gemini-2.5-pro",
    "gemini-2.0-flash",
]
MAX_RATIONALE_CHARS = 1200

STATUS_OK = "ok"
STATUS_SKIPPED = "skipped_no_api_key"
STATUS_HTTP_ERROR = "http_error"
STATUS_REQUEST_ERROR = "request_error"
STATUS_INVALID = "invalid_response"


@dataclass(frozen=True)
class RationaleResult:
    status: str
    text: str = ""
    model: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK and bool(self.text)


class BaseRationaleClient:
    def generate(self, prompt: str) -> RationaleResult:
        raise NotImplementedError


class NoopRationaleClient(BaseRationaleClient):
    def __init__(self, reason: str = STATUS_SKIPPED) -> None:
        self.reason = reason

    def generate(self, prompt: str) -> RationaleResult:
        return RationaleResult(status=self.reason, model="noop")


class GeminiRationaleClient(BaseRationaleClient):
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_GEMINI_MODEL,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls) -> BaseRationaleClient:
        api_key = (os.environ.get("GEMINI_API_KEY") or "").strip()
        if not api_key:
            return NoopRationaleClient(STATUS_SKIPPED)
        model = os.environ.get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL)
        return cls(api_key=api_key, model=model)

    def _redact(self, text: str) -> str:
        if not text:
            return text
        redacted = text.replace(self.api_key, "[REDACTED]")
        redacted = re.sub(r"(key=)[^&\s()]+", r"\1[REDACTED]", redacted)
        return redacted

    def _model_chain(self) -> List[str]:
        chain: List[str] = []
        primary = (self.model or "").strip()
        if primary:
            chain.append(primary)
        for model in DEFAULT_MODEL_CHAIN:
            if model not in chain:
                chain.append(model)
        return chain

    def _call_api(self, prompt: str, model: str) -> RationaleResult:
        url = f"{GEMINI_API_URL_TEMPLATE.format(model=model)}?key={self.api_key}"
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.4, "maxOutputTokens": 256},
        }
        try:
            resp = self.session.post(url, json=payload, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            return RationaleResult(status=STATUS_REQUEST_ERROR, model=model, error=self._redact(str(exc)))
        if resp.status_code >= 400:
            return RationaleResult(status=STATUS_HTTP_ERROR, model=model, error=f"http_error: {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            return RationaleResult(status=STATUS_INVALID, model=model, error=f"non_json_response: {exc}")
        text = _extract_text(data)
        if not text:
            return RationaleResult(status=STATUS_INVALID, model=model, error="missing_text_part")
        return RationaleResult(status=STATUS_OK, text=text[:MAX_RATIONALE_CHARS], model=model)

    def generate(self, prompt: str) -> RationaleResult:
        last: Optional[RationaleResult] = None
        for model in self._model_chain():
            result = self._call_api(prompt, model)
            if result.status in {STATUS_HTTP_ERROR, STATUS_REQUEST_ERROR}:
                logger.warning("Gemini %s failed with %s; trying next model", model, result.status)
                last = result
                continue
            return result
        return last or RationaleResult(status=STATUS_REQUEST_ERROR, error="no_models")


def _extract_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    candidates = data.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    texts = [p.get("text") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
    return " ".join(t.strip() for t in texts if t.strip()).strip()


def build_prompt(candidate: Candidate) -> str:
    f = candidate.raw_factors
    lines = [
        "Write a concise (2-3 sentence) rationale for opening a new store at this site.",
        "Use only the facts below and mention the strongest factor first.",
        f"Location: {candidate.lat:.5f}, {candidate.lng:.5f}"
        + (f" ({candidate.city}, {candidate.region})" if candidate.city or candidate.region else ""),
        f"Score: {candidate.score or 0:.1f}/100, confidence {candidate.confidence or 0:.2f}",
        f"Area: {f.area_class or 'unknown'}, land use: {f.landuse or 'unknown'}",
        f"Population within 5km: {int(f.population or 0)}",
        "Nearest existing store: "
        + ("none" if f.nearest_store_km is None else f"{f.nearest_store_km:.1f}km")
        + (" (white space)" if candidate.is_white_space else ""),
        f"Anchor POIs: {f.anchor_count or 0:.0f}",
    ]
    if f.nearby_turnover is not None:
        lines.append(f"Nearby store average turnover: {f.nearby_turnover:.0f}")
    estimated = [k for k, v in candidate.data_quality.flags().items() if v]
    if estimated:
        lines.append(f"Estimated (not measured) factors: {', '.join(estimated)}")
    return "\n".join(lines)


def template_rationale(candidate: Candidate) -> str:
    f = candidate.raw_factors
    pop = f.population or 0.0
    place = candidate.city or f"{candidate.lat:.4f}, {candidate.lng:.4f}"
    parts = [f"{place} ({f.area_class or 'unclassified'}) shows expansion potential."]

    if pop > 100000:
        parts.append(f"Large population base (~{round(pop / 1000)}k residents) provides substantial market opportunity.")
    elif pop > 20000:
        parts.append(f"Moderate population (~{round(pop / 1000)}k residents) offers good market size.")
    else:
        parts.append(f"Smaller community (~{round(pop / 1000)}k residents) with focused market potential.")

    nearest = f.nearest_store_km
    if nearest is None:
        parts.append("No existing stores in the network yet; the whole area is unserved.")
    elif nearest > 15:
        parts.append(f"Significant service gap: nearest store {round(nearest)}km away.")
    elif nearest > 8:
        parts.append(f"Moderate service gap: {round(nearest)}km to the nearest store.")
    else:
        parts.append(f"Competitive area with a store {nearest:.1f}km away, but market size supports expansion.")

    anchors = f.anchor_count or 0.0
    if anchors > 10:
        parts.append(f"Strong commercial ecosystem with {anchors:.0f} anchor POIs drives foot traffic.")
    elif anchors > 5:
        parts.append(f"Moderate commercial activity with {anchors:.0f} anchor POIs provides customer draw.")
    else:
        parts.append(f"Developing commercial area with {anchors:.0f} anchor POIs offers growth potential.")

    turnover = f.nearby_turnover
    if turnover is not None and turnover > 800000:
        parts.append(f"High-performing nearby stores (avg {round(turnover / 1000)}k turnover) indicate strong market conditions.")
    elif turnover is not None and turnover > 500000:
        parts.append(f"Solid nearby store performance (avg {round(turnover / 1000)}k turnover) suggests a viable market.")
    else:
        parts.append("Market opportunity exists despite modest or unknown nearby performance.")
    return " ".join(parts)


class RationaleEnricher:
    def __init__(
        self,
        client: BaseRationaleClient,
        limiter: CostLimiterConfig,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.client = client
        self.limiter = limiter
        self.metrics = metrics

    def enrich(self, candidates: Sequence[Candidate]) -> Tuple[List[Candidate], Dict[str, Any]]:
        selection = select_for_enrichment(candidates, lambda c: c.score or 0.0, self.limiter)
        enrich = set(selection.enrich_indices)
        statuses: Dict[str, int] = {}
        out: List[Candidate] = []
        for index, candidate in enumerate(candidates):
            if index not in enrich:
                out.append(replace(candidate, rationale=template_rationale(candidate), rationale_source="template"))
                continue
            result = self.client.generate(build_prompt(candidate))
            statuses[result.status] = statuses.get(result.status, 0) + 1
            if self.metrics is not None and not isinstance(self.client, NoopRationaleClient):
                self.metrics.inc_network("ai")
                if not result.ok:
                    self.metrics.inc_failure("ai")
            if result.ok:
                out.append(replace(candidate, rationale=result.text, rationale_source=f"ai:{result.model}"))
            else:
                out.append(
                    replace(
                        candidate,
                        rationale=template_rationale(candidate),
                        rationale_source=f"template_fallback:{result.status}",
                    )
                )
        summary = dict(selection.summary)
        summary["statuses"] = statuses
        return out, summary
