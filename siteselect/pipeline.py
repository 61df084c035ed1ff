"""Pipeline orchestration.

Tile -> Validate -> Score -> AntiCannibalize -> AllocateFairness -> Rank&Cap
-> CostLimitEnrichment -> Emit. Every stage takes the previous stage's full
output and records a StageDiagnostics entry.
"""
from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import config
from .cannibalization import AntiCannibalizationFilter
from .config import ConfigurationError, ExpansionConfig, validate_config
from .fairness import RegionalFairnessAllocator, analyze_distribution
from .geo import haversine_km
from .http import ProviderUnavailable, RequestMetrics
from .land import LandSuitabilityValidator, is_accepted
from .models import Candidate, ExistingStore, Settlement, candidate_to_row, order_by_score
from .rationale import BaseRationaleClient, NoopRationaleClient, RationaleEnricher
from .reporting import (
    ProgressReporter,
    ensure_dir,
    write_candidates_csv,
    write_json_object,
    write_summary,
)
from .scoring import AnchorSource, ScoringEngine, score_distribution
from .tiling import SpatialTiler, analyze_settlement_proximity, settlement_density_summary, tile_stats
from .urban import UrbanSuitabilityValidator

logger = logging.getLogger(__name__)

CITY_MATCH_RADIUS_KM = 15.0


class PipelineCancelled(RuntimeError):
    pass


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: str) -> None:
        if self._event.is_set():
            raise PipelineCancelled(f"Pipeline cancelled before stage {stage}")


@dataclass
class StageDiagnostics:
    stage: str
    count_in: int
    count_out: int
    rejections: Dict[str, int] = field(default_factory=dict)
    cache_hit_rate: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineResult:
    candidates: List[Candidate]
    diagnostics: List[StageDiagnostics]
    summary: Dict[str, Any]


def validate_bbox(bbox: Dict[str, float]) -> None:
    try:
        lat_min, lat_max = float(bbox["lat_min"]), float(bbox["lat_max"])
        lon_min, lon_max = float(bbox["lon_min"]), float(bbox["lon_max"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Bounding box needs numeric lat_min/lat_max/lon_min/lon_max: {exc}") from exc
    if not (-90.0 <= lat_min < lat_max <= 90.0):
        raise ConfigurationError(f"Invalid latitude range {lat_min}..{lat_max}")
    if not (-180.0 <= lon_min < lon_max <= 180.0):
        raise ConfigurationError(f"Invalid longitude range {lon_min}..{lon_max}")


def resolve_locality(
    candidate: Candidate,
    stores: Sequence[ExistingStore],
    settlements: Sequence[Settlement],
) -> Tuple[Optional[str], Optional[str]]:
    """Region from the nearest labelled settlement or store; city only when close."""
    labelled: List[Tuple[float, str, Optional[str], Optional[str]]] = []
    for s in settlements:
        d = haversine_km(candidate.lat, candidate.lng, s.lat, s.lng)
        labelled.append((d, f"s:{s.name}", s.region, s.city or s.name))
    for st in stores:
        d = haversine_km(candidate.lat, candidate.lng, st.lat, st.lng)
        labelled.append((d, f"t:{st.id}", st.region, st.city))
    labelled.sort(key=lambda item: (item[0], item[1]))

    region = next((r for _, _, r, _ in labelled if r), None)
    city = next((c for d, _, _, c in labelled if c and d <= CITY_MATCH_RADIUS_KM), None)
    return region, city


class CandidateSelectionPipeline:
    def __init__(
        self,
        cfg: ExpansionConfig,
        land_validator: Optional[LandSuitabilityValidator] = None,
        urban_validator: Optional[UrbanSuitabilityValidator] = None,
        rationale_client: Optional[BaseRationaleClient] = None,
        metrics: Optional[RequestMetrics] = None,
        rng: Optional[random.Random] = None,
        anchor_source: Optional[AnchorSource] = None,
        progress: Optional[ProgressReporter] = None,
    ) -> None:
        validate_config(cfg)
        self.cfg = cfg
        self.land_validator = land_validator
        self.urban_validator = urban_validator
        self.rationale_client = rationale_client or NoopRationaleClient()
        self.metrics = metrics or RequestMetrics()
        self.rng = rng or random.Random(cfg.seed)
        self.anchor_source = anchor_source
        self.progress = progress or ProgressReporter(None, log_every=config.PROGRESS_LOG_EVERY, logger=logger)

    # --- stages ---

    def _tile(
        self,
        bbox: Dict[str, float],
        stores: Sequence[ExistingStore],
        settlements: Sequence[Settlement],
        engine: ScoringEngine,
    ) -> Tuple[List[Candidate], StageDiagnostics]:
        tiler = SpatialTiler(self.cfg, rng=self.rng)
        tiling = tiler.generate_tiles(bbox, settlements)
        provisional = engine.provisional_score if stores else None
        candidates = tiler.generate_candidates(tiling, provisional_score=provisional)
        located = []
        for candidate in candidates:
            region, city = resolve_locality(candidate, stores, settlements)
            located.append(replace(candidate, region=region, city=city))
        extra: Dict[str, Any] = {
            "mode": tiling.mode,
            "gap_tiles": tiling.gap_tiles,
            "supplement_tiles": tiling.supplement_tiles,
            "tiles": tile_stats(tiling.tiles, tiling.resolution),
        }
        if settlements:
            extra["settlements"] = settlement_density_summary(settlements, bbox)
            extra["settlement_coverage"] = analyze_settlement_proximity(bbox, settlements)["stats"]
        diag = StageDiagnostics(stage="tile", count_in=len(tiling.tiles), count_out=len(located), extra=extra)
        return located, diag

    def _validate_one(self, candidate: Candidate) -> Tuple[Optional[Candidate], Optional[str]]:
        if self.land_validator is not None:
            land = self.land_validator.validate(candidate.lat, candidate.lng)
            candidate = replace(candidate, land=land)
            if land.fail_open:
                candidate = candidate.with_flag("land_fail_open")
            elif not is_accepted(land):
                return None, f"land_{land.rejection_reason or 'invalid'}"

        if self.urban_validator is not None:
            try:
                urban = self.urban_validator.validate(candidate.lat, candidate.lng)
            except ProviderUnavailable as exc:
                logger.warning("Urban validation unavailable for %s: %s", candidate.id, exc)
                if not self.cfg.keep_on_urban_failure:
                    return None, "urban_provider_unavailable"
                return candidate.with_flag("urban_unvalidated"), None
            candidate = replace(candidate, urban=urban)
            if not urban.is_suitable:
                return None, f"urban_{urban.rejection_reason or 'unsuitable'}"
        return candidate, None

    def _validate(self, candidates: List[Candidate], token: CancellationToken) -> Tuple[List[Candidate], StageDiagnostics]:
        self.progress.set_stage("validate", total_estimate=len(candidates))
        results: Dict[int, Tuple[Optional[Candidate], Optional[str]]] = {}
        workers = max(1, min(int(self.cfg.validation_workers), len(candidates) or 1))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._validate_one, c): i for i, c in enumerate(candidates)}
            for future in as_completed(futures):
                results[futures[future]] = future.result()
                self.progress.advance()
        self.progress.flush()
        token.check("score")

        survivors: List[Candidate] = []
        rejections: Dict[str, int] = {}
        for index in range(len(candidates)):
            validated, reason = results[index]
            if validated is None:
                rejections[reason or "rejected"] = rejections.get(reason or "rejected", 0) + 1
            else:
                survivors.append(validated)

        fail_open = sum(1 for c in survivors if "land_fail_open" in c.flags)
        unvalidated = sum(1 for c in survivors if "urban_unvalidated" in c.flags)
        extra: Dict[str, Any] = {
            "validated": len(survivors) - fail_open - unvalidated,
            "land_fail_open": fail_open,
            "urban_unvalidated": unvalidated,
        }
        hit_rates = []
        if self.land_validator is not None:
            extra["land_cache"] = self.land_validator.cache_stats()
            hit_rates.append(extra["land_cache"])
        if self.urban_validator is not None:
            extra["urban_cache"] = self.urban_validator.cache_stats()
            extra["urban_rejections"] = self.urban_validator.rejection_stats()
            hit_rates.append(extra["urban_cache"])
        hits = sum(s["cache_hits"] for s in hit_rates)
        lookups = sum(s["cache_hits"] + s["cache_misses"] for s in hit_rates)
        diag = StageDiagnostics(
            stage="validate",
            count_in=len(candidates),
            count_out=len(survivors),
            rejections=rejections,
            cache_hit_rate=round(hits / lookups, 4) if lookups else None,
            extra=extra,
        )
        return survivors, diag

    # --- run ---

    def _enter(self, stage: str, token: CancellationToken) -> None:
        token.check(stage)
        self.progress.set_stage(stage)

    def run(
        self,
        bbox: Dict[str, float],
        stores: Sequence[ExistingStore],
        settlements: Optional[Sequence[Settlement]] = None,
        token: Optional[CancellationToken] = None,
        output_dir: Optional[str] = None,
    ) -> PipelineResult:
        validate_bbox(bbox)
        token = token or CancellationToken()
        settlements = list(settlements or [])
        stores = list(stores)
        diagnostics: List[StageDiagnostics] = []
        engine = ScoringEngine(self.cfg, stores, settlements, anchor_source=self.anchor_source)

        self._enter("tile", token)
        candidates, diag = self._tile(bbox, stores, settlements, engine)
        diagnostics.append(diag)
        logger.info("Tiling produced %s candidates from %s tiles", diag.count_out, diag.count_in)

        self._enter("validate", token)
        candidates, diag = self._validate(candidates, token)
        diagnostics.append(diag)
        logger.info("Validation kept %s of %s candidates", diag.count_out, diag.count_in)

        self._enter("score", token)
        scored = [engine.score_candidate(c) for c in candidates]
        diagnostics.append(
            StageDiagnostics(
                stage="score",
                count_in=len(candidates),
                count_out=len(scored),
                extra={"distribution": score_distribution([c.score or 0.0 for c in scored])},
            )
        )

        self._enter("anti_cannibalize", token)
        acf = AntiCannibalizationFilter(self.cfg)
        filtered = acf.filter(scored, stores)
        filter_diag = acf.last_diagnostics.as_dict()
        diagnostics.append(
            StageDiagnostics(
                stage="anti_cannibalize",
                count_in=len(scored),
                count_out=len(filtered),
                rejections={
                    "too_close_to_store": filter_diag["too_close_to_store"],
                    "city_cap": filter_diag["city_cap"],
                    "nms_suppressed": filter_diag["nms_suppressed"],
                },
                extra={"nms_radius_km": round(self.cfg.nms_radius_km, 3)},
            )
        )

        self._enter("allocate_fairness", token)
        target = self.cfg.effective_target
        allocation = RegionalFairnessAllocator(self.cfg.redistribute_shortfall).allocate(filtered, target)
        diagnostics.append(
            StageDiagnostics(
                stage="allocate_fairness",
                count_in=len(filtered),
                count_out=len(allocation.selected),
                extra={
                    "allocations": allocation.allocations,
                    "filled": allocation.filled,
                    "average_scores": allocation.average_scores,
                    "shortfall": allocation.shortfall,
                    "redistributed": allocation.redistributed,
                },
            )
        )

        self._enter("rank_cap", token)
        ranked = order_by_score(allocation.selected)[:target]
        diagnostics.append(StageDiagnostics(stage="rank_cap", count_in=len(allocation.selected), count_out=len(ranked)))

        self._enter("enrich", token)
        enricher = RationaleEnricher(self.rationale_client, self.cfg.cost_limiter, metrics=self.metrics)
        enriched, enrichment_summary = enricher.enrich(ranked)
        diagnostics.append(
            StageDiagnostics(stage="enrich", count_in=len(ranked), count_out=len(enriched), extra=enrichment_summary)
        )

        self._enter("emit", token)
        summary = build_summary(self.cfg, enriched, filtered, diagnostics, self.metrics)
        if output_dir:
            emit_outputs(output_dir, enriched, diagnostics, summary)
        return PipelineResult(candidates=enriched, diagnostics=diagnostics, summary=summary)


def build_summary(
    cfg: ExpansionConfig,
    selected: Sequence[Candidate],
    pool: Sequence[Candidate],
    diagnostics: Sequence[StageDiagnostics],
    metrics: RequestMetrics,
) -> Dict[str, Any]:
    stages = {d.stage: d for d in diagnostics}
    validate = stages.get("validate")
    return {
        "target_count": cfg.target_count,
        "effective_target": cfg.effective_target,
        "selected": len(selected),
        "stages": [{"stage": d.stage, "in": d.count_in, "out": d.count_out} for d in diagnostics],
        "validation": dict(validate.extra) if validate else {},
        "validation_rejections": dict(validate.rejections) if validate else {},
        "cache_hit_rate": validate.cache_hit_rate if validate else None,
        "score_distribution": score_distribution([c.score or 0.0 for c in selected]),
        "fairness": analyze_distribution(selected, pool=pool),
        "requests": metrics.as_dict(),
        "ai": dict(stages["enrich"].extra) if "enrich" in stages else {},
    }


def render_summary(summary: Dict[str, Any]) -> List[str]:
    lines = []
    lines.append(
        f"Selected candidates: {summary['selected']} (target {summary['target_count']}, "
        f"effective {summary['effective_target']})"
    )
    lines.append("Stages:")
    for stage in summary.get("stages", []):
        lines.append(f"  {stage['stage']}: in={stage['in']} out={stage['out']}")
    validation = summary.get("validation", {})
    if validation:
        lines.append(
            "Validation: validated={validated}, land_fail_open={fail_open}, urban_unvalidated={unvalidated}".format(
                validated=validation.get("validated", 0),
                fail_open=validation.get("land_fail_open", 0),
                unvalidated=validation.get("urban_unvalidated", 0),
            )
        )
    rejections = summary.get("validation_rejections", {})
    if rejections:
        lines.append("Validation rejections:")
        for reason, count in sorted(rejections.items(), key=lambda x: (-x[1], x[0])):
            lines.append(f"  {reason}: {count}")
    hit_rate = summary.get("cache_hit_rate")
    if hit_rate is not None:
        lines.append(f"Validation cache hit rate: {hit_rate:.2%}")
    dist = summary.get("score_distribution", {})
    if dist.get("count"):
        lines.append(
            "Scores: mean={mean} median={median} std={std} min={min} max={max}".format(**{k: dist[k] for k in ("mean", "median", "std", "min", "max")})
        )
    fairness = summary.get("fairness", {})
    if fairness.get("distributions"):
        lines.append(f"Regional fairness score: {fairness.get('overall_score', 0.0):.2f}")
        for d in fairness["distributions"]:
            lines.append(
                f"  {d['region']}: sites={d['selected_sites']} share={d['site_share']:.1%} "
                f"expected={d['expected_share']:.1%} status={d['status']}"
            )
    ai = summary.get("ai", {})
    if ai:
        lines.append(
            "AI rationale: {with_ai}/{total} candidates, est. savings GBP {savings:.4f}".format(
                with_ai=ai.get("with_ai", 0),
                total=ai.get("total", 0),
                savings=safe_float(ai.get("estimated_savings_gbp")),
            )
        )
    return lines


def emit_outputs(
    output_dir: str,
    candidates: Sequence[Candidate],
    diagnostics: Sequence[StageDiagnostics],
    summary: Dict[str, Any],
) -> None:
    ensure_dir(output_dir)
    rows = []
    for rank, candidate in enumerate(candidates, start=1):
        row = candidate_to_row(candidate)
        row["rank"] = rank
        rows.append(row)
    write_json_object(f"{output_dir}/candidates.json", rows)
    write_candidates_csv(f"{output_dir}/candidates.csv", rows)
    write_json_object(
        f"{output_dir}/diagnostics.json",
        {"stages": [asdict(d) for d in diagnostics], "summary": summary},
    )
    write_summary(f"{output_dir}/summary.txt", render_summary(summary))
    logger.info("Wrote %s candidates to %s", len(rows), output_dir)


def safe_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
