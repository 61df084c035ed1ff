"""Regional fairness allocation and distribution analysis."""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .models import Candidate, order_by_score

logger = logging.getLogger(__name__)

UNKNOWN_REGION = "unknown"


@dataclass(frozen=True)
class AllocationResult:
    selected: List[Candidate]
    allocations: Dict[str, int] = field(default_factory=dict)
    filled: Dict[str, int] = field(default_factory=dict)
    average_scores: Dict[str, float] = field(default_factory=dict)
    shortfall: int = 0
    redistributed: int = 0


def region_key(candidate: Candidate) -> str:
    return (candidate.region or UNKNOWN_REGION).strip() or UNKNOWN_REGION


def group_by_region(candidates: Sequence[Candidate]) -> "OrderedDict[str, List[Candidate]]":
    groups: "OrderedDict[str, List[Candidate]]" = OrderedDict()
    for candidate in candidates:
        groups.setdefault(region_key(candidate), []).append(candidate)
    return groups


class RegionalFairnessAllocator:
    def __init__(self, redistribute_shortfall: bool = False) -> None:
        self.redistribute_shortfall = redistribute_shortfall

    def allocate(self, ranked: Sequence[Candidate], total_target: int) -> AllocationResult:
        """Split total_target slots evenly across regions.

        The remainder goes one slot at a time to the regions with the highest
        average score. A region that cannot fill its allocation keeps its
        shortfall unless redistribute_shortfall is set.
        """
        if total_target <= 0 or not ranked:
            return AllocationResult(selected=[])

        groups = group_by_region(ranked)
        averages = {
            region: sum((c.score or 0.0) for c in members) / len(members)
            for region, members in groups.items()
        }
        by_quality = sorted(groups, key=lambda r: (-averages[r], r))

        base, remainder = divmod(int(total_target), len(groups))
        allocations = {region: base for region in groups}
        for region in by_quality[:remainder]:
            allocations[region] += 1

        selected: List[Candidate] = []
        filled: Dict[str, int] = {}
        for region in by_quality:
            picks = order_by_score(groups[region])[: allocations[region]]
            filled[region] = len(picks)
            selected.extend(picks)

        shortfall = sum(allocations.values()) - len(selected)
        redistributed = 0
        if shortfall and self.redistribute_shortfall:
            chosen = {c.id for c in selected}
            leftovers = [c for c in order_by_score(list(ranked)) if c.id not in chosen]
            extra = leftovers[:shortfall]
            for candidate in extra:
                filled[region_key(candidate)] += 1
            selected.extend(extra)
            redistributed = len(extra)
            shortfall -= redistributed

        if shortfall:
            logger.info("Regional allocation under-filled by %s slots", shortfall)

        return AllocationResult(
            selected=order_by_score(selected),
            allocations=allocations,
            filled=filled,
            average_scores={r: round(v, 3) for r, v in averages.items()},
            shortfall=shortfall,
            redistributed=redistributed,
        )


def analyze_distribution(
    selected: Sequence[Candidate],
    pool: Optional[Sequence[Candidate]] = None,
    population_by_region: Optional[Mapping[str, float]] = None,
    threshold: float = 0.2,
) -> Dict[str, Any]:
    """Compare each region's share of selected sites with its expected share.

    The expected share is the region's population share when populations are
    given, otherwise its share of the candidate pool.
    """
    site_counts: Dict[str, int] = {}
    for candidate in selected:
        key = region_key(candidate)
        site_counts[key] = site_counts.get(key, 0) + 1

    if population_by_region:
        weights = {r: float(v) for r, v in population_by_region.items() if v and v > 0}
        basis = "population"
    else:
        weights = {}
        for candidate in pool if pool is not None else selected:
            key = region_key(candidate)
            weights[key] = weights.get(key, 0.0) + 1.0
        basis = "candidates"
    for region in site_counts:
        weights.setdefault(region, 0.0)

    total_weight = sum(weights.values())
    total_sites = len(selected)
    distributions = []
    for region in sorted(weights):
        expected = weights[region] / total_weight if total_weight else 0.0
        share = site_counts.get(region, 0) / total_sites if total_sites else 0.0
        ratio = share / expected if expected > 0 else 0.0
        if ratio < 1 - threshold:
            status = "under"
        elif ratio > 1 + threshold:
            status = "over"
        else:
            status = "balanced"
        distributions.append(
            {
                "region": region,
                "selected_sites": site_counts.get(region, 0),
                "site_share": round(share, 4),
                "expected_share": round(expected, 4),
                "fairness_ratio": round(ratio, 4),
                "status": status,
                "deviation": round(abs(share - expected), 4),
            }
        )

    if distributions:
        total_deviation = sum(d["deviation"] for d in distributions)
        overall = max(0.0, 1.0 - total_deviation / (len(distributions) * 0.5))
    else:
        overall = 1.0
    return {
        "basis": basis,
        "total_sites": total_sites,
        "overall_score": round(overall, 4),
        "distributions": distributions,
    }
