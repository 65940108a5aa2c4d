"""Facade wiring the routing engine components behind one service object."""

from datetime import date, datetime
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from payin_engine.core.config import AppSettings, EngineSettings
from payin_engine.models.alerts import AlertModel
from payin_engine.models.base import utc_now
from payin_engine.models.endpoints import EndpointModel
from payin_engine.models.enums import AmountTier, GeoMatch, PayinOutcome, TierMatch
from payin_engine.models.exceptions import InvalidRequest, ModelNotFoundError
from payin_engine.models.payins import OutcomeAck, PayinRequest
from payin_engine.models.selection_logs import SelectionLogModel
from payin_engine.repositories.factory import RepositoryBundle, build_repositories

from .alert_service import AlertService
from .circuit_breaker_monitor import CircuitBreakerMonitor
from .endpoint_registry import EndpointRegistry
from .event_bus import EngineEventBus, Subscription
from .ifsc_lookup_service import IfscLookupService
from .outcome_reporter import OutcomeReporter
from .selector import PayinSelector
from .stats_aggregator import StatsAggregator


logger = logging.getLogger(__name__)


class PayinEngineService:
    """Single entry point for selection, outcome reporting and administration."""

    def __init__(
        self,
        settings: EngineSettings,
        repositories: RepositoryBundle,
        ifsc_service: Optional[IfscLookupService] = None,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.repositories = repositories
        self.event_bus = EngineEventBus()
        self._clock = clock
        self._ifsc = ifsc_service
        self._timezone = ZoneInfo(settings.monitoring.day_rollover_timezone)

        self.alerts = AlertService(repositories.alerts, self.event_bus, clock)
        self.monitor = CircuitBreakerMonitor(
            repositories.breakers,
            repositories.transitions,
            self.alerts,
            settings.breaker,
            self.event_bus,
            clock,
        )
        self.registry = EndpointRegistry(
            repositories.endpoints,
            repositories.reservations,
            settings.selection,
            self.event_bus,
            clock,
        )
        self.stats = StatsAggregator(
            repositories.selection_logs,
            repositories.reservations,
            self.alerts,
            settings.monitoring,
            clock,
        )
        self.selector = PayinSelector(
            self.registry,
            self.monitor,
            self.stats,
            settings,
            self.event_bus,
            clock,
            timer,
        )
        self.reporter = OutcomeReporter(self.registry, self.monitor, settings.breaker, self.event_bus)
        self._current_day = self._local_day(clock())

    # ── Routing ──────────────────────────────────────────────────────────

    def select_endpoint(self, request: Union[PayinRequest, Mapping[str, Any]]) -> Dict[str, Any]:
        """Reserve the best endpoint for ``request`` and return the response payload."""
        return self.selector.select(request).to_response()

    def report_outcome(
        self,
        endpoint_id: str,
        outcome: Union[PayinOutcome, str],
        reservation_id: Optional[str] = None,
    ) -> OutcomeAck:
        return self.reporter.report(endpoint_id, outcome, reservation_id)

    # ── Circuits ─────────────────────────────────────────────────────────

    def get_circuit_status(self) -> List[Dict[str, Any]]:
        return self.monitor.get_status(self.registry.active_counts_by_bank())

    def reset_circuit(self, bank: str, actor: str = "admin") -> Dict[str, Any]:
        return self.monitor.reset(bank, actor)

    # ── Stats and alerts ─────────────────────────────────────────────────

    def get_realtime_stats(self) -> Dict[str, Any]:
        return self.stats.get_realtime_stats()

    def query_selection_logs(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        bank: Optional[str] = None,
        tier_match: Optional[TierMatch] = None,
        geo_match: Optional[GeoMatch] = None,
        limit: int = 100,
    ) -> List[SelectionLogModel]:
        return self.stats.query_logs(start, end, bank, tier_match, geo_match, limit)

    def get_match_breakdown(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        return self.stats.get_match_breakdown(start, end)

    def list_alerts(self, unacknowledged_only: bool = False, limit: Optional[int] = None) -> List[AlertModel]:
        return self.alerts.list_alerts(unacknowledged_only, limit)

    def acknowledge_alert(self, alert_id: str, admin_id: str) -> AlertModel:
        return self.alerts.acknowledge(alert_id, admin_id)

    def subscribe(self, event_types: Optional[List[str]] = None) -> Subscription:
        return self.event_bus.subscribe(event_types)

    # ── Endpoint administration ──────────────────────────────────────────

    def list_endpoints(self, active_only: bool = False) -> List[EndpointModel]:
        return self.registry.list_endpoints(active_only)

    def register_endpoint(self, data: Union[EndpointModel, Mapping[str, Any]]) -> EndpointModel:
        """Add an endpoint to the pool, filling missing bank geography from its IFSC when possible.

        Raises:
            InvalidRequest: If the payload fails validation.
            VersionConflictError: If the endpoint id is already registered.
        """
        if isinstance(data, EndpointModel):
            endpoint = data
        else:
            try:
                endpoint = EndpointModel.model_validate(dict(data))
            except ValidationError as exc:
                raise InvalidRequest("Invalid endpoint", errors=exc.errors(include_url=False, include_context=False)) from exc

        if endpoint.ifsc and not (endpoint.bank_city and endpoint.bank_state) and self._ifsc_enabled:
            try:
                location = self._ifsc.lookup(endpoint.ifsc)
            except (RuntimeError, ValueError):
                logger.warning("IFSC geo lookup skipped ifsc=%s", endpoint.ifsc)
                location = None
            if location is not None:
                endpoint = endpoint.model_copy(
                    update={
                        "bank_city": endpoint.bank_city or location.city,
                        "bank_state": endpoint.bank_state or location.state,
                    }
                )
        return self.registry.register(endpoint)

    def set_endpoint_active(self, endpoint_id: str, active: bool) -> EndpointModel:
        return self.registry.set_active(endpoint_id, active)

    def update_endpoint_limits(
        self,
        endpoint_id: str,
        amount_tier: Optional[Union[AmountTier, str]] = None,
        daily_limit: Optional[float] = None,
        per_txn_limit: Optional[float] = None,
    ) -> EndpointModel:
        try:
            tier = AmountTier(amount_tier) if amount_tier is not None else None
        except ValueError as exc:
            raise InvalidRequest("Unknown amount tier {0}".format(amount_tier)) from exc
        for name, value in (("daily_limit", daily_limit), ("per_txn_limit", per_txn_limit)):
            if value is not None and value <= 0:
                raise InvalidRequest("{0} must be > 0".format(name), **{name: value})
        return self.registry.update_limits(endpoint_id, tier, daily_limit, per_txn_limit)

    def refresh_endpoint_geo(self, endpoint_id: str) -> EndpointModel:
        """Re-resolve the endpoint's bank city and state from its IFSC.

        Raises:
            InvalidRequest: If the endpoint has no IFSC or lookups are disabled.
            ModelNotFoundError: If the endpoint or the IFSC branch is unknown.
            RuntimeError: If the IFSC API cannot be reached.
        """
        endpoint = self.registry.get(endpoint_id)
        if not endpoint.ifsc:
            raise InvalidRequest("Endpoint {0} has no IFSC code".format(endpoint_id), endpoint_id=endpoint_id)
        if not self._ifsc_enabled:
            raise InvalidRequest("IFSC lookup is disabled")
        try:
            location = self._ifsc.lookup(endpoint.ifsc)
        except ValueError as exc:
            raise InvalidRequest(str(exc), ifsc=endpoint.ifsc) from exc
        if location is None:
            raise ModelNotFoundError("IFSC branch not found: {0}".format(endpoint.ifsc))
        return self.registry.update_geo(endpoint_id, location.city, location.state)

    # ── Maintenance ──────────────────────────────────────────────────────

    def run_maintenance(self) -> Dict[str, Any]:
        """One ticker cycle: breaker cooldowns, expired holds, day rollover, anomaly detection."""
        now = self._clock()
        transitions = self.monitor.tick()
        expired = self.reporter.sweep_expired_holds()

        rolled_over = False
        today = self._local_day(now)
        if today != self._current_day:
            logger.info("Calendar day changed %s -> %s. Resetting daily counters.", self._current_day, today)
            self.registry.reset_daily_counters()
            self._current_day = today
            rolled_over = True

        alert = self.stats.detect_anomalies(now)
        return {
            "transitions": len(transitions),
            "expired_holds": expired,
            "day_rollover": rolled_over,
            "anomaly_alert": alert.id if alert is not None else None,
        }

    @property
    def _ifsc_enabled(self) -> bool:
        return self._ifsc is not None and self._ifsc.is_enabled

    def _local_day(self, moment: datetime) -> date:
        return moment.astimezone(self._timezone).date()


def build_engine(
    settings: AppSettings,
    repositories: Optional[RepositoryBundle] = None,
    clock: Callable[[], datetime] = utc_now,
) -> PayinEngineService:
    """Build an engine for ``settings``, using the configured storage backend by default."""
    if repositories is None:
        repositories = build_repositories(settings)
    ifsc_service = IfscLookupService(
        enabled=settings.ifsc_lookup_enabled,
        api_base_url=settings.ifsc_api_base_url,
        timeout_sec=settings.ifsc_api_timeout_sec,
    )
    logger.info("Payin engine built backend=%s", repositories.backend)
    return PayinEngineService(settings.engine, repositories, ifsc_service=ifsc_service, clock=clock)
