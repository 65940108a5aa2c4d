"""Configuration loading utilities for YAML-based engine settings."""

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .logging_config import get_logger


logger = get_logger(__name__)
_BASE_DIR = Path(__file__).resolve().parent.parent
_CONFIG_PATH = _BASE_DIR / "config.yml"
_CONFIG_ENV_VAR = "PAYIN_ENGINE_CONFIG"

TierBand = Tuple[str, float, float]

# Bands are contiguous: the first covers [min, max], every later one (min, max].

KNOWN_TIERS = ("micro", "small", "medium", "large", "xlarge")

DEFAULT_TIER_BANDS: Tuple[TierBand, ...] = (
    ("micro", 100.0, 1000.0),
    ("small", 1000.0, 5000.0),
    ("medium", 5000.0, 15000.0),
    ("large", 15000.0, 50000.0),
    ("xlarge", 50000.0, 100000.0),
)


@dataclass(frozen=True)
class ScoringWeights:
    """Tunable weights for the tier, geo, success-rate and headroom score terms."""

    tier_exact: float = 50.0
    tier_adjacent: float = 20.0
    geo_city: float = 15.0
    geo_state: float = 8.0
    success_rate_weight: float = 0.1
    headroom_penalty: float = 4.0
    half_open_penalty: float = 0.0
    consecutive_failure_penalty: float = 0.0

    def __post_init__(self) -> None:
        # Boosts are whole points; a state match must still earn one.
        if round(self.geo_state) < 1 or round(self.geo_city) <= round(self.geo_state):
            raise ValueError(
                "geo weights must round to geo_city > geo_state >= 1, got geo_city={0} geo_state={1}".format(
                    self.geo_city, self.geo_state
                )
            )


@dataclass(frozen=True)
class BreakerSettings:
    """Per-bank circuit breaker thresholds and timings."""

    failure_threshold: float = 0.30
    window_minutes: int = 15
    min_samples: int = 5
    cooldown_minutes: int = 10
    half_open_max_probes: int = 1
    expired_counts_as_failure: bool = False


@dataclass(frozen=True)
class SelectionSettings:
    """Selector retry, reservation and rolling-statistics parameters."""

    max_reservation_attempts: int = 3
    reservation_timeout_sec: float = 2.0
    reservation_hold_minutes: int = 30
    fallback_chain_size: int = 3
    success_rate_sample_size: int = 50


@dataclass(frozen=True)
class MonitoringSettings:
    """Ticker cadence and anomaly detection parameters."""

    tick_interval_sec: int = 5
    day_rollover_timezone: str = "Asia/Kolkata"
    anomaly_min_success_rate: float = 50.0
    anomaly_min_samples: int = 10
    anomaly_cooldown_minutes: int = 30
    top_banks_limit: int = 5


@dataclass(frozen=True)
class EngineSettings:
    """Engine tuning loaded from the ``engine`` config section."""

    weights: ScoringWeights = field(default_factory=ScoringWeights)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    selection: SelectionSettings = field(default_factory=SelectionSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    tier_bands: Tuple[TierBand, ...] = DEFAULT_TIER_BANDS


@dataclass(frozen=True)
class AppSettings:
    """Application settings loaded from YAML configuration file."""

    app_name: str
    debug: bool
    host: str
    port: int
    log_level: str
    cors_origins: list[str]
    firebase_enabled: bool
    firebase_project_id: Optional[str]
    firebase_credentials_path: Optional[str]
    collections: Dict[str, str]
    ifsc_lookup_enabled: bool
    ifsc_api_base_url: str
    ifsc_api_timeout_sec: int
    ticker_enabled: bool
    engine: EngineSettings


DEFAULT_COLLECTIONS: Dict[str, str] = {
    "endpoints": "upi_pool",
    "circuit_breakers": "bank_circuits",
    "selection_logs": "selection_logs",
    "alerts": "engine_alerts",
    "reservations": "payin_reservations",
    "transitions": "circuit_transitions",
}


def _to_bool(value: Any, default: bool = False) -> bool:
    """Convert value to bool with a default fallback."""
    try:
        if isinstance(value, bool):
            return value
        return value.strip().lower() in {"1", "true", "yes", "on"}
    except (AttributeError, ValueError):
        logger.warning("Invalid boolean value '%s'. Using default=%s", value, default)
        return default


def _to_int(value: Any, default: int) -> int:
    """Convert value to int with a default fallback."""
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid integer value '%s'. Using default=%s", value, default)
        return default


def _to_float(value: Any, default: float) -> float:
    """Convert value to float with a default fallback."""
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid float value '%s'. Using default=%s", value, default)
        return default


def _to_list(value: Any) -> list[str]:
    """Convert list-like or comma-separated value to list[str]."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value).split(",") if item.strip()]


def _config_path() -> Path:
    """Resolve the config file path, honouring the environment override."""
    override = os.environ.get(_CONFIG_ENV_VAR)
    if override:
        return Path(override)
    return _CONFIG_PATH


def _read_config(path: Optional[Path] = None) -> dict:
    """Read and parse YAML configuration."""
    config_path = path or _config_path()
    try:
        with config_path.open("r", encoding="utf-8") as config_file:
            config_data = yaml.safe_load(config_file) or {}
        logger.info("Configuration loaded from %s", config_path)
        return config_data
    except FileNotFoundError:
        logger.warning("Config file not found at %s. Falling back to defaults.", config_path)
        return {}
    except Exception:
        logger.exception("Failed to load config file from %s", config_path)
        return {}


def _load_tier_bands(raw: Any) -> Tuple[TierBand, ...]:
    """Parse ``engine.tiers`` into ordered ``(name, min, max)`` bands."""
    if not isinstance(raw, dict) or not raw:
        return DEFAULT_TIER_BANDS
    bands = []
    for name, bounds in raw.items():
        if str(name).strip().lower() not in KNOWN_TIERS:
            logger.warning("Ignoring unknown tier band name=%s", name)
            continue
        if not isinstance(bounds, dict):
            logger.warning("Ignoring malformed tier band name=%s value=%s", name, bounds)
            continue
        low = _to_float(bounds.get("min"), 0.0)
        high = _to_float(bounds.get("max"), 0.0)
        if high < low:
            logger.warning("Ignoring tier band with max < min name=%s", name)
            continue
        bands.append((str(name).strip().lower(), low, high))
    if not bands:
        return DEFAULT_TIER_BANDS
    bands.sort(key=lambda band: band[1])
    for previous, current in zip(bands, bands[1:]):
        if current[1] > previous[2]:
            logger.warning(
                "Amounts between %s and %s match no tier band (%s, %s)",
                previous[2],
                current[1],
                previous[0],
                current[0],
            )
    return tuple(bands)


def _load_weights(raw: dict) -> ScoringWeights:
    """Build scoring weights and warn when they break tier precedence."""
    defaults = ScoringWeights()
    geo_city = _to_float(raw.get("geo_city", defaults.geo_city), defaults.geo_city)
    geo_state = _to_float(raw.get("geo_state", defaults.geo_state), defaults.geo_state)
    if round(geo_state) < 1 or round(geo_city) <= round(geo_state):
        logger.warning(
            "geo_city=%s must exceed geo_state=%s and both must round to at least 1. "
            "Using defaults for geo weights.",
            geo_city,
            geo_state,
        )
        geo_city, geo_state = defaults.geo_city, defaults.geo_state
    weights = ScoringWeights(
        tier_exact=_to_float(raw.get("tier_exact", defaults.tier_exact), defaults.tier_exact),
        tier_adjacent=_to_float(raw.get("tier_adjacent", defaults.tier_adjacent), defaults.tier_adjacent),
        geo_city=geo_city,
        geo_state=geo_state,
        success_rate_weight=_to_float(
            raw.get("success_rate_weight", defaults.success_rate_weight), defaults.success_rate_weight
        ),
        headroom_penalty=_to_float(raw.get("headroom_penalty", defaults.headroom_penalty), defaults.headroom_penalty),
        half_open_penalty=_to_float(
            raw.get("half_open_penalty", defaults.half_open_penalty), defaults.half_open_penalty
        ),
        consecutive_failure_penalty=_to_float(
            raw.get("consecutive_failure_penalty", defaults.consecutive_failure_penalty),
            defaults.consecutive_failure_penalty,
        ),
    )
    swing = weights.geo_city + 100.0 * weights.success_rate_weight + weights.headroom_penalty
    if weights.tier_exact - weights.tier_adjacent <= swing:
        logger.warning(
            "Tier gap %.2f does not exceed geo/success/headroom swing %.2f; "
            "adjacent-tier endpoints may outrank exact-tier ones.",
            weights.tier_exact - weights.tier_adjacent,
            swing,
        )
    return weights


def _load_engine_settings(raw: Any) -> EngineSettings:
    """Parse the ``engine`` config section."""
    engine_cfg = raw if isinstance(raw, dict) else {}
    breaker_cfg = engine_cfg.get("breaker", {}) or {}
    selection_cfg = engine_cfg.get("selection", {}) or {}
    monitoring_cfg = engine_cfg.get("monitoring", {}) or {}
    b = BreakerSettings()
    s = SelectionSettings()
    m = MonitoringSettings()

    breaker = BreakerSettings(
        failure_threshold=_to_float(breaker_cfg.get("failure_threshold", b.failure_threshold), b.failure_threshold),
        window_minutes=_to_int(breaker_cfg.get("window_minutes", b.window_minutes), b.window_minutes),
        min_samples=_to_int(breaker_cfg.get("min_samples", b.min_samples), b.min_samples),
        cooldown_minutes=_to_int(breaker_cfg.get("cooldown_minutes", b.cooldown_minutes), b.cooldown_minutes),
        half_open_max_probes=max(
            1, _to_int(breaker_cfg.get("half_open_max_probes", b.half_open_max_probes), b.half_open_max_probes)
        ),
        expired_counts_as_failure=_to_bool(
            breaker_cfg.get("expired_counts_as_failure", b.expired_counts_as_failure), b.expired_counts_as_failure
        ),
    )
    selection = SelectionSettings(
        max_reservation_attempts=max(
            1,
            _to_int(
                selection_cfg.get("max_reservation_attempts", s.max_reservation_attempts),
                s.max_reservation_attempts,
            ),
        ),
        reservation_timeout_sec=_to_float(
            selection_cfg.get("reservation_timeout_sec", s.reservation_timeout_sec), s.reservation_timeout_sec
        ),
        reservation_hold_minutes=_to_int(
            selection_cfg.get("reservation_hold_minutes", s.reservation_hold_minutes), s.reservation_hold_minutes
        ),
        fallback_chain_size=_to_int(selection_cfg.get("fallback_chain_size", s.fallback_chain_size), s.fallback_chain_size),
        success_rate_sample_size=max(
            1,
            _to_int(
                selection_cfg.get("success_rate_sample_size", s.success_rate_sample_size),
                s.success_rate_sample_size,
            ),
        ),
    )
    monitoring = MonitoringSettings(
        tick_interval_sec=max(1, _to_int(monitoring_cfg.get("tick_interval_sec", m.tick_interval_sec), m.tick_interval_sec)),
        day_rollover_timezone=str(monitoring_cfg.get("day_rollover_timezone", m.day_rollover_timezone)),
        anomaly_min_success_rate=_to_float(
            monitoring_cfg.get("anomaly_min_success_rate", m.anomaly_min_success_rate), m.anomaly_min_success_rate
        ),
        anomaly_min_samples=_to_int(monitoring_cfg.get("anomaly_min_samples", m.anomaly_min_samples), m.anomaly_min_samples),
        anomaly_cooldown_minutes=_to_int(
            monitoring_cfg.get("anomaly_cooldown_minutes", m.anomaly_cooldown_minutes), m.anomaly_cooldown_minutes
        ),
        top_banks_limit=_to_int(monitoring_cfg.get("top_banks_limit", m.top_banks_limit), m.top_banks_limit),
    )
    return EngineSettings(
        weights=_load_weights(engine_cfg.get("weights", {}) or {}),
        breaker=breaker,
        selection=selection,
        monitoring=monitoring,
        tier_bands=_load_tier_bands(engine_cfg.get("tiers")),
    )


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load and validate application settings from ``config.yml``."""
    config = _read_config(path)
    app_cfg = config.get("app", {}) or {}
    firebase_cfg = config.get("firebase", {}) or {}
    ifsc_cfg = config.get("ifsc_api", {}) or {}
    ticker_cfg = config.get("ticker", {}) or {}

    collections = dict(DEFAULT_COLLECTIONS)
    for alias, name in (firebase_cfg.get("collections", {}) or {}).items():
        if alias in collections and name:
            collections[alias] = str(name)

    return AppSettings(
        app_name=str(app_cfg.get("name", "Payin Routing Engine")),
        debug=_to_bool(app_cfg.get("debug", False), False),
        host=str(app_cfg.get("host", "127.0.0.1")),
        port=_to_int(app_cfg.get("port", 8000), 8000),
        log_level=str(app_cfg.get("log_level", "INFO")),
        cors_origins=_to_list(app_cfg.get("cors_origins", ["http://localhost:5173"])),
        firebase_enabled=_to_bool(firebase_cfg.get("enabled", False), False),
        firebase_project_id=firebase_cfg.get("project_id"),
        firebase_credentials_path=firebase_cfg.get("credentials_path"),
        collections=collections,
        ifsc_lookup_enabled=_to_bool(ifsc_cfg.get("enabled", True), True),
        ifsc_api_base_url=str(ifsc_cfg.get("base_url", "https://ifsc.razorpay.com")),
        ifsc_api_timeout_sec=_to_int(ifsc_cfg.get("timeout_sec", 10), 10),
        ticker_enabled=_to_bool(ticker_cfg.get("enabled", True), True),
        engine=_load_engine_settings(config.get("engine", {})),
    )
