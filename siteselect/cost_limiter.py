"""Bounds how many candidates receive paid AI rationale."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence, TypeVar

from . import config
from .config import CostLimiterConfig

T = TypeVar("T")


@dataclass(frozen=True)
class EnrichmentSelection:
    enrich_indices: List[int] = field(default_factory=list)
    skip_indices: List[int] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)


def estimate_cost_gbp(tokens: int) -> float:
    input_tokens = tokens * config.AI_INPUT_SHARE
    output_tokens = tokens * (1.0 - config.AI_INPUT_SHARE)
    usd = (
        input_tokens / 1_000_000 * config.AI_INPUT_PRICE_PER_MTOK_USD
        + output_tokens / 1_000_000 * config.AI_OUTPUT_PRICE_PER_MTOK_USD
    )
    return usd * config.USD_TO_GBP


def ai_candidate_count(total: int, limiter: CostLimiterConfig) -> int:
    if total <= 0:
        return 0
    if not limiter.enabled:
        return total
    count = math.ceil(total * limiter.percentage / 100.0)
    if limiter.absolute_cap is not None:
        count = min(count, int(limiter.absolute_cap))
    return max(0, min(count, total))


def calculate_ai_limit(total: int, limiter: CostLimiterConfig) -> Dict[str, Any]:
    count = ai_candidate_count(total, limiter)
    skipped = total - count
    tokens_skipped = skipped * limiter.tokens_per_candidate
    return {
        "total": total,
        "with_ai": count,
        "skipped": skipped,
        "percentage_with_ai": round(count / total * 100.0, 2) if total else 0.0,
        "tokens_skipped": tokens_skipped,
        "estimated_savings_gbp": round(estimate_cost_gbp(tokens_skipped), 6),
        "estimated_cost_gbp": round(estimate_cost_gbp(count * limiter.tokens_per_candidate), 6),
    }


def select_for_enrichment(
    candidates: Sequence[T],
    score: Callable[[T], float],
    limiter: CostLimiterConfig,
) -> EnrichmentSelection:
    """Pick the top-scoring candidates for AI rationale; indices refer to the input order."""
    summary = calculate_ai_limit(len(candidates), limiter)
    count = summary["with_ai"]
    if count >= len(candidates):
        return EnrichmentSelection(enrich_indices=list(range(len(candidates))), summary=summary)
    ranked = sorted(range(len(candidates)), key=lambda i: (-score(candidates[i]), i))
    enrich = sorted(ranked[:count])
    chosen = set(enrich)
    skip = [i for i in range(len(candidates)) if i not in chosen]
    return EnrichmentSelection(enrich_indices=enrich, skip_indices=skip, summary=summary)
