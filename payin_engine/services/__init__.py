"""Service layer exports."""

from .alert_service import AlertService
from .circuit_breaker_monitor import CircuitBreakerMonitor
from .endpoint_registry import EndpointRegistry
from .engine_ticker import EngineTicker
from .event_bus import EngineEvent, EngineEventBus, Subscription
from .ifsc_lookup_service import BranchLocation, IfscLookupService
from .outcome_reporter import OutcomeReporter
from .payin_engine_service import PayinEngineService, build_engine
from .selector import PayinSelector
from .stats_aggregator import StatsAggregator
from .tier_geo_scorer import ScoreResult, amount_tier_for, score_endpoint

__all__ = [
    "AlertService",
    "BranchLocation",
    "CircuitBreakerMonitor",
    "EndpointRegistry",
    "EngineEvent",
    "EngineEventBus",
    "EngineTicker",
    "IfscLookupService",
    "OutcomeReporter",
    "PayinEngineService",
    "PayinSelector",
    "ScoreResult",
    "StatsAggregator",
    "Subscription",
    "amount_tier_for",
    "build_engine",
    "score_endpoint",
]
