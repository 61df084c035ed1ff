"""Project configuration.

Defaults live here as module constants. A run is configured with an explicit,
immutable ExpansionConfig built by load_expansion_config(), which layers an
optional expansion_config.json and environment overrides on top of the
defaults.
"""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

_REPO_ROOT = Path(__file__).resolve().parent.parent


class ConfigurationError(ValueError):
    pass


# --- API endpoints ---

MAPBOX_TILEQUERY_URL_TEMPLATE = "https://api.mapbox.com/v4/{tileset}/tilequery/{lng},{lat}.json"
MAPBOX_STREETS_TILESET = "mapbox.mapbox-streets-v8"
LAND_TILEQUERY_LAYERS = "water,landuse"
URBAN_TILEQUERY_LAYERS = "road,building,place,landuse"
TILEQUERY_LIMIT = 50

# --- Validation ---

LAND_CACHE_TTL_DAYS = 90
URBAN_CACHE_TTL_DAYS = 30
LAND_POINT_RADIUS_M = 10
LAND_COAST_SEARCH_RADIUS_M = 500
URBAN_SEARCH_RADIUS_M = 150

EXCLUDED_LANDUSE = frozenset({"farmland", "forest", "water", "wetland", "park"})
APPROVED_LANDUSE = frozenset({"residential", "commercial", "retail", "industrial"})
ACCEPTED_ROAD_TYPES = frozenset(
    {"motorway", "trunk", "primary", "secondary", "tertiary", "residential", "unclassified"}
)
ACCEPTED_PLACE_TYPES = frozenset({"city", "town", "village", "locality", "hamlet"})

# --- Selection ---

HARD_CAP = 300
DEFAULT_TARGET_COUNT = 100

# --- AI cost model ---

AI_TOKENS_PER_CANDIDATE = 150
AI_INPUT_SHARE = 0.7
AI_INPUT_PRICE_PER_MTOK_USD = 0.15
AI_OUTPUT_PRICE_PER_MTOK_USD = 0.60
USD_TO_GBP = 0.8

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 20
HTTP_RETRY_MAX = 4
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0
RATE_LIMIT_PER_MINUTE = 10

# --- Cache and outputs ---

CACHE_DB_PATH = "cache.db"
OUTPUT_DIR = "out"
PROGRESS_LOG_EVERY = 50
PROGRESS_WRITE_INTERVAL_SECONDS = 5.0


@dataclass(frozen=True)
class ScoringWeights:
    population: float = 0.25
    coverage_gap: float = 0.35
    anchors: float = 0.20
    performance: float = 0.20
    saturation: float = 0.15

    def as_dict(self) -> Dict[str, float]:
        return {f.name: float(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class WhiteSpaceConfig:
    urban_coverage_km: float = 12.5
    suburban_coverage_km: float = 17.5
    rural_coverage_km: float = 25.0
    base_boost: float = 25.0
    high_population_threshold: int = 10000
    population_boost: float = 15.0
    remote_ratio: float = 1.5
    max_remote_boost: float = 15.0
    rural_boost: float = 5.0
    max_boost: float = 50.0
    proximity_max: float = 5.0


@dataclass(frozen=True)
class CostLimiterConfig:
    enabled: bool = True
    percentage: float = 20.0
    absolute_cap: Optional[int] = 60
    tokens_per_candidate: int = AI_TOKENS_PER_CANDIDATE


DEVELOPMENT_AI_CAP = 30


@dataclass(frozen=True)
class ExpansionConfig:
    # Tiling
    resolution: Optional[int] = 8
    adaptive_resolution: bool = True
    settlement_aware: bool = True
    samples_per_tile: int = 3
    gap_focus_radius_m: float = 10000.0
    gap_cell_target: int = 25
    max_tiles: int = 5000
    # Validation
    coastline_buffer_m: float = 300.0
    urban_search_radius_m: float = URBAN_SEARCH_RADIUS_M
    validation_workers: int = 8
    keep_on_urban_failure: bool = True
    # Anti-cannibalization
    min_distance_km: float = 2.0
    max_per_city: Optional[int] = None
    drive_time_minutes: float = 10.0
    drive_speed_kmh: float = 50.0
    # Selection
    target_count: int = DEFAULT_TARGET_COUNT
    hard_cap: int = HARD_CAP
    redistribute_shortfall: bool = False
    # Scoring
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    white_space: WhiteSpaceConfig = field(default_factory=WhiteSpaceConfig)
    anchor_overlap_fraction: float = 0.20
    estimated_weight_cap: float = 0.50
    estimated_anchor_weight_cap: float = 0.80
    saturation_radius_km: float = 5.0
    peer_radius_km: float = 25.0
    # AI enrichment
    cost_limiter: CostLimiterConfig = field(default_factory=CostLimiterConfig)
    # Misc
    seed: int = 42

    @property
    def effective_target(self) -> int:
        return min(int(self.target_count), int(self.hard_cap))

    @property
    def nms_radius_km(self) -> float:
        return (self.drive_time_minutes / 60.0) * self.drive_speed_kmh


def validate_config(cfg: ExpansionConfig) -> None:
    """Raise ConfigurationError for values the pipeline cannot run with."""
    weights = cfg.weights.as_dict()
    for name, value in weights.items():
        if not math.isfinite(value) or value < 0:
            raise ConfigurationError(f"Weight {name} must be a finite non-negative number, got {value}")
    if sum(weights.values()) <= 0:
        raise ConfigurationError("At least one scoring weight must be positive")
    if cfg.resolution is not None and not 0 <= int(cfg.resolution) <= 15:
        raise ConfigurationError(f"resolution must be between 0 and 15, got {cfg.resolution}")
    if cfg.samples_per_tile < 1:
        raise ConfigurationError("samples_per_tile must be >= 1")
    if not 0.0 <= cfg.min_distance_km <= 50.0:
        raise ConfigurationError(f"min_distance_km must be between 0 and 50, got {cfg.min_distance_km}")
    if cfg.max_per_city is not None and not 1 <= int(cfg.max_per_city) <= 100:
        raise ConfigurationError(f"max_per_city must be between 1 and 100, got {cfg.max_per_city}")
    if cfg.target_count < 1:
        raise ConfigurationError("target_count must be >= 1")
    if cfg.hard_cap < 1 or cfg.hard_cap > HARD_CAP:
        raise ConfigurationError(f"hard_cap must be between 1 and {HARD_CAP}")
    if cfg.coastline_buffer_m < 0:
        raise ConfigurationError("coastline_buffer_m must be >= 0")
    if not 0.0 <= cfg.cost_limiter.percentage <= 100.0:
        raise ConfigurationError("AI candidate percentage must be between 0 and 100")
    if cfg.cost_limiter.absolute_cap is not None and cfg.cost_limiter.absolute_cap < 0:
        raise ConfigurationError("AI absolute cap must be >= 0")
    if not 0.0 <= cfg.anchor_overlap_fraction < 1.0:
        raise ConfigurationError("anchor_overlap_fraction must be in [0, 1)")
    if not 0.0 <= cfg.estimated_weight_cap <= 1.0 or not 0.0 <= cfg.estimated_anchor_weight_cap <= 1.0:
        raise ConfigurationError("weight caps must be in [0, 1]")
    if cfg.validation_workers < 1:
        raise ConfigurationError("validation_workers must be >= 1")
    if cfg.drive_time_minutes < 0 or cfg.drive_speed_kmh <= 0:
        raise ConfigurationError("drive-time NMS needs minutes >= 0 and speed > 0")
    if cfg.gap_focus_radius_m <= 0:
        raise ConfigurationError("gap_focus_radius_m must be > 0")
    _validate_white_space(cfg.white_space)


def _validate_white_space(ws: WhiteSpaceConfig) -> None:
    for name in ("urban_coverage_km", "suburban_coverage_km", "rural_coverage_km", "max_boost", "remote_ratio"):
        value = float(getattr(ws, name))
        if not math.isfinite(value) or value <= 0:
            raise ConfigurationError(f"white_space.{name} must be > 0, got {value}")
    for name in ("base_boost", "population_boost", "max_remote_boost", "rural_boost", "proximity_max", "high_population_threshold"):
        value = float(getattr(ws, name))
        if not math.isfinite(value) or value < 0:
            raise ConfigurationError(f"white_space.{name} must be >= 0, got {value}")


# Environment variable -> (config field, parser)
_ENV_OVERRIDES: Tuple[Tuple[str, str, Any], ...] = (
    ("EXPANSION_H3_RESOLUTION", "resolution", int),
    ("EXPANSION_SAMPLES_PER_TILE", "samples_per_tile", int),
    ("EXPANSION_COASTLINE_BUFFER_M", "coastline_buffer_m", float),
    ("EXPANSION_MIN_DISTANCE_KM", "min_distance_km", float),
    ("EXPANSION_MAX_PER_CITY", "max_per_city", int),
    ("EXPANSION_TARGET_COUNT", "target_count", int),
    ("EXPANSION_H3_GAP_FOCUS_RADIUS_M", "gap_focus_radius_m", float),
    ("EXPANSION_DRIVE_TIME_NMS_MINUTES", "drive_time_minutes", float),
    ("EXPANSION_DRIVE_SPEED_KMH", "drive_speed_kmh", float),
    ("EXPANSION_VALIDATION_WORKERS", "validation_workers", int),
)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _coerce(name: str, parser: Any, value: Any) -> Any:
    if value is None:
        return None
    try:
        if parser is bool:
            return _parse_bool(value)
        return parser(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}") from exc


def _merge_section(cls: Any, current: Any, data: Mapping[str, Any], section: str) -> Any:
    known = {f.name: f for f in fields(cls)}
    updates: Dict[str, Any] = {}
    for key, value in data.items():
        f = known.get(key)
        if f is None:
            continue
        default = getattr(current, key)
        parser = type(default) if default is not None else float
        if key == "absolute_cap":
            parser = int
        updates[key] = _coerce(f"{section}.{key}", parser, value)
    return replace(current, **updates)


def config_from_dict(data: Mapping[str, Any], base: Optional[ExpansionConfig] = None) -> ExpansionConfig:
    cfg = base or ExpansionConfig()
    nested = {
        "weights": ScoringWeights,
        "white_space": WhiteSpaceConfig,
        "cost_limiter": CostLimiterConfig,
    }
    updates: Dict[str, Any] = {}
    for f in fields(ExpansionConfig):
        if f.name not in data:
            continue
        value = data[f.name]
        if f.name in nested:
            if not isinstance(value, Mapping):
                raise ConfigurationError(f"{f.name} must be an object")
            updates[f.name] = _merge_section(nested[f.name], getattr(cfg, f.name), value, f.name)
            continue
        default = getattr(cfg, f.name)
        if f.name in {"resolution", "max_per_city"}:
            parser: Any = int
        elif isinstance(default, bool):
            parser = bool
        elif default is None:
            parser = float
        else:
            parser = type(default)
        updates[f.name] = _coerce(f.name, parser, value)
    return replace(cfg, **updates)


def _env_overrides(env: Mapping[str, str], cfg: ExpansionConfig, cap_from_file: bool = False) -> ExpansionConfig:
    updates: Dict[str, Any] = {}
    for env_name, field_name, parser in _ENV_OVERRIDES:
        raw = (env.get(env_name) or "").strip()
        if raw:
            updates[field_name] = _coerce(env_name, parser, raw)
    if updates:
        cfg = replace(cfg, **updates)

    app_env = (env.get("APP_ENV") or env.get("NODE_ENV") or "").strip().lower()
    limiter = cfg.cost_limiter
    if app_env == "development" and not cap_from_file:
        limiter = replace(limiter, absolute_cap=DEVELOPMENT_AI_CAP)
    limiter_updates: Dict[str, Any] = {}
    pct = (env.get("AI_CANDIDATE_PERCENTAGE") or "").strip()
    if pct:
        limiter_updates["percentage"] = _coerce("AI_CANDIDATE_PERCENTAGE", float, pct)
    cap = (env.get("AI_MAX_CANDIDATES") or "").strip()
    if cap:
        limiter_updates["absolute_cap"] = _coerce("AI_MAX_CANDIDATES", int, cap)
    if limiter_updates:
        limiter = replace(limiter, **limiter_updates)
    if limiter is not cfg.cost_limiter:
        cfg = replace(cfg, cost_limiter=limiter)
    return cfg


def load_expansion_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ExpansionConfig:
    """Build an ExpansionConfig from defaults, an optional JSON file and env vars.

    A missing file is not an error; a malformed one is.
    """
    if path is None:
        path = str(_REPO_ROOT / "expansion_config.json")
    if env is None:
        env = os.environ

    cfg = ExpansionConfig()
    cap_from_file = False
    config_path = Path(path)
    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_path} must contain a JSON object")
        cfg = config_from_dict(data, cfg)
        limiter_data = data.get("cost_limiter")
        cap_from_file = isinstance(limiter_data, Mapping) and "absolute_cap" in limiter_data

    cfg = _env_overrides(env, cfg, cap_from_file=cap_from_file)
    validate_config(cfg)
    return cfg
