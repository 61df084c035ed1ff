"""CLI entrypoint."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv as _load_dotenv

from siteselect import config
from siteselect.cache import CacheJanitor, ValidationCache
from siteselect.config import ConfigurationError, ExpansionConfig, load_expansion_config, validate_config
from siteselect.http import HttpClient, RateLimiter, RequestBudget, RequestMetrics
from siteselect.land import LandSuitabilityValidator
from siteselect.pipeline import CandidateSelectionPipeline, PipelineCancelled, render_summary, validate_bbox
from siteselect.providers import (
    StoreFilter,
    TilequeryClient,
    load_country_geometry,
    load_settlements,
    mapbox_token_from_env,
    open_store_source,
)
from siteselect.rationale import GeminiRationaleClient, NoopRationaleClient
from siteselect.reporting import ProgressReporter, ensure_dir
from siteselect.urban import UrbanSuitabilityValidator

logger = logging.getLogger("run")


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def _env_len(name: str) -> int:
    return len((os.environ.get(name) or "").strip())


def parse_bbox(value: str) -> Dict[str, float]:
    """Parse "lat_min,lon_min,lat_max,lon_max"."""
    parts = [p.strip() for p in (value or "").split(",")]
    if len(parts) != 4:
        raise ConfigurationError(f"Bounding box needs 4 comma-separated numbers, got {value!r}")
    try:
        lat_min, lon_min, lat_max, lon_max = (float(p) for p in parts)
    except ValueError as exc:
        raise ConfigurationError(f"Bounding box must be numeric: {value!r}") from exc
    bbox = {"lat_min": lat_min, "lon_min": lon_min, "lat_max": lat_max, "lon_max": lon_max}
    validate_bbox(bbox)
    return bbox


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate and select store expansion candidates")
    parser.add_argument("--preflight", action="store_true", help="Run offline checks only")
    parser.add_argument("--bbox", type=str, default=None, help="Search area: lat_min,lon_min,lat_max,lon_max")
    parser.add_argument("--stores", type=str, default=None, help="Existing stores (JSON or CSV)")
    parser.add_argument("--settlements", type=str, default=None, help="Settlements (JSON or CSV)")
    parser.add_argument("--country", type=str, default=None, help="Only use stores in this country")
    parser.add_argument("--region", type=str, default=None, help="Only use stores in this region")
    parser.add_argument("--city", type=str, default=None, help="Only use stores in this city")
    parser.add_argument("--country-geojson", type=str, default=None, help="Country outline for land validation")
    parser.add_argument(
        "--country-bbox",
        type=str,
        default=None,
        help="Country bounding box lat_min,lon_min,lat_max,lon_max (used without --country-geojson)",
    )
    parser.add_argument("--config", type=str, default=None, help="expansion_config.json path")
    parser.add_argument("--target", type=int, default=None, help="Target number of candidates")
    parser.add_argument("--min-distance-km", type=float, default=None)
    parser.add_argument("--max-per-city", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--cache-path", type=str, default=config.CACHE_DB_PATH)
    parser.add_argument("--purge-cache", action="store_true", help="Drop expired cache entries before running")
    parser.add_argument("--no-validation", action="store_true", help="Skip land and urban validation")
    parser.add_argument("--no-ai", action="store_true", help="Use template rationale only")
    parser.add_argument("--max-land-requests", type=int, default=None)
    parser.add_argument("--max-urban-requests", type=int, default=None)
    parser.add_argument("--out", type=str, default=config.OUTPUT_DIR)
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ExpansionConfig:
    cfg = load_expansion_config(args.config)
    updates = {}
    if args.target is not None:
        updates["target_count"] = args.target
    if args.min_distance_km is not None:
        updates["min_distance_km"] = args.min_distance_km
    if args.max_per_city is not None:
        updates["max_per_city"] = args.max_per_city
    if args.seed is not None:
        updates["seed"] = args.seed
    if updates:
        cfg = replace(cfg, **updates)
        validate_config(cfg)
    return cfg


def run_preflight(args: argparse.Namespace) -> int:
    ok = True
    try:
        cfg = build_config(args)
        print(f"Config: OK (target={cfg.effective_target}, min_distance_km={cfg.min_distance_km})")
    except ConfigurationError as exc:
        print(f"Config: FAIL ({exc})")
        ok = False

    if args.bbox:
        try:
            parse_bbox(args.bbox)
            print("Bounding box: OK")
        except ConfigurationError as exc:
            print(f"Bounding box: FAIL ({exc})")
            ok = False
    else:
        print("Bounding box: MISSING")
        ok = False

    for label, path in (("Stores", args.stores), ("Settlements", args.settlements), ("Country GeoJSON", args.country_geojson)):
        if not path:
            print(f"{label}: not set")
            continue
        exists = Path(path).exists()
        print(f"{label}: {path} (exists={exists})")
        if not exists:
            ok = False

    print(f"MAPBOX_ACCESS_TOKEN length: {len(mapbox_token_from_env() or '')}")
    print(f"GEMINI_API_KEY length: {_env_len('GEMINI_API_KEY')}")
    return 0 if ok else 2


def build_validators(args, cfg, cache, metrics):
    if args.no_validation:
        return None, None
    token = mapbox_token_from_env()
    limits = {}
    if args.max_land_requests is not None:
        limits["land"] = args.max_land_requests
    if args.max_urban_requests is not None:
        limits["urban"] = args.max_urban_requests
    budget = RequestBudget(limits=limits, metrics=metrics)
    http_client = HttpClient(
        timeout=config.HTTP_TIMEOUT_SECONDS,
        retry_max=config.HTTP_RETRY_MAX,
        backoff_base=config.HTTP_BACKOFF_BASE,
        backoff_max=config.HTTP_BACKOFF_MAX,
        rate_limiter=RateLimiter(per_minute=config.RATE_LIMIT_PER_MINUTE),
    )

    country_geometry = None
    country_bbox = None
    if args.country_geojson:
        country_geometry = load_country_geometry(args.country_geojson)
    elif args.country_bbox:
        country_bbox = parse_bbox(args.country_bbox)

    land_provider = TilequeryClient(http_client, token, "land", budget=budget) if token else None
    land = LandSuitabilityValidator(
        cache=cache,
        country_geometry=country_geometry,
        country_bbox=country_bbox,
        provider=land_provider,
        coastline_buffer_m=cfg.coastline_buffer_m,
        metrics=metrics,
    )
    if not token:
        logger.warning("MAPBOX_ACCESS_TOKEN not set; urban validation disabled")
        return land, None
    urban = UrbanSuitabilityValidator(
        TilequeryClient(http_client, token, "urban", budget=budget),
        cache=cache,
        search_radius_m=cfg.urban_search_radius_m,
        metrics=metrics,
    )
    return land, urban


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    load_env()
    args = parse_args(argv)

    if args.preflight:
        return run_preflight(args)

    try:
        cfg = build_config(args)
        if not args.bbox:
            raise ConfigurationError("--bbox is required")
        bbox = parse_bbox(args.bbox)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 2

    store_filter = StoreFilter(country=args.country, region=args.region, city=args.city)
    stores = open_store_source(args.stores).list_stores(store_filter) if args.stores else []
    settlements = load_settlements(args.settlements) if args.settlements else []
    logger.info("Loaded %s stores and %s settlements", len(stores), len(settlements))

    ensure_dir(args.out)
    metrics = RequestMetrics()
    cache = ValidationCache(args.cache_path)
    janitor = CacheJanitor(cache)
    try:
        if args.purge_cache:
            logger.info("Purged %s expired cache entries", cache.purge_expired())
        janitor.start()
        land, urban = build_validators(args, cfg, cache, metrics)
        client = NoopRationaleClient() if args.no_ai else GeminiRationaleClient.from_env()
        progress = ProgressReporter(
            os.path.join(args.out, "progress.json"),
            log_every=config.PROGRESS_LOG_EVERY,
            write_interval_seconds=config.PROGRESS_WRITE_INTERVAL_SECONDS,
            logger=logger,
            metrics=metrics,
        )
        pipeline = CandidateSelectionPipeline(
            cfg,
            land_validator=land,
            urban_validator=urban,
            rationale_client=client,
            metrics=metrics,
            progress=progress,
        )
        result = pipeline.run(bbox, stores, settlements, output_dir=args.out)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 2
    except PipelineCancelled as exc:
        logger.warning("%s", exc)
        return 130
    finally:
        janitor.stop()
        cache.close()

    for line in render_summary(result.summary):
        print(line)
    print(json.dumps(metrics.as_dict(), sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
