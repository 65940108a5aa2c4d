"""Payin endpoint selection: filter, score, rank, reserve and log."""

from dataclasses import dataclass
from datetime import datetime
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Union

from pydantic import ValidationError

from payin_engine.core.config import EngineSettings
from payin_engine.models.base import utc_now
from payin_engine.models.endpoints import EndpointModel
from payin_engine.models.enums import AmountTier, CircuitState
from payin_engine.models.exceptions import InvalidRequest, NoEligibleEndpoint, PoolExhausted
from payin_engine.models.payins import PayinRequest, SelectionResult
from payin_engine.models.reservations import ReservationModel

from .circuit_breaker_monitor import CircuitBreakerMonitor
from .endpoint_registry import EndpointRegistry
from .event_bus import SELECTION_MADE, EngineEventBus
from .stats_aggregator import StatsAggregator
from .tier_geo_scorer import ScoreResult, amount_tier_for, score_endpoint


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankedCandidate:
    """An eligible endpoint with its score and the bank breaker state seen at ranking time."""

    endpoint: EndpointModel
    result: ScoreResult
    breaker_state: CircuitState

    @property
    def sort_key(self) -> tuple:
        # Highest score first; ties go to the least-used endpoint, then the lowest id.
        return (-self.result.score, self.endpoint.daily_volume, self.endpoint.document_id)


def parse_request(request: Union[PayinRequest, Mapping[str, Any]]) -> PayinRequest:
    """Coerce a mapping into a ``PayinRequest``.

    Raises:
        InvalidRequest: If the payload fails validation.
    """
    if isinstance(request, PayinRequest):
        return request
    try:
        return PayinRequest.model_validate(dict(request))
    except ValidationError as exc:
        raise InvalidRequest("Invalid payin request", errors=exc.errors(include_url=False, include_context=False)) from exc
    except (TypeError, ValueError) as exc:
        raise InvalidRequest("Invalid payin request: {0}".format(exc)) from exc


class PayinSelector:
    """Choose and reserve the best endpoint for one payin request."""

    def __init__(
        self,
        registry: EndpointRegistry,
        monitor: CircuitBreakerMonitor,
        stats: StatsAggregator,
        settings: EngineSettings,
        event_bus: EngineEventBus,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._monitor = monitor
        self._stats = stats
        self._settings = settings
        self._event_bus = event_bus
        self._clock = clock
        self._timer = timer

    def rank(self, request: PayinRequest) -> List[RankedCandidate]:
        """Return eligible, tier-compatible endpoints ordered best first."""
        states: Dict[str, CircuitState] = {}
        eligible_banks: Dict[str, bool] = {}
        ranked: List[RankedCandidate] = []
        for endpoint in self._registry.eligible_endpoints(request.amount):
            key = endpoint.bank_key
            if key not in states:
                states[key] = self._monitor.state_of(endpoint.bank_name)
                eligible_banks[key] = self._monitor.is_eligible(endpoint.bank_name)
            if not eligible_banks[key]:
                logger.debug("Skipping endpoint_id=%s: bank=%s breaker=%s", endpoint.id, key, states[key].value)
                continue
            result = score_endpoint(
                request,
                endpoint,
                self._settings.weights,
                self._settings.tier_bands,
                breaker_state=states[key],
            )
            if result is None:
                logger.debug("Skipping endpoint_id=%s: tier=%s incompatible", endpoint.id, endpoint.amount_tier.value)
                continue
            ranked.append(RankedCandidate(endpoint=endpoint, result=result, breaker_state=states[key]))
        ranked.sort(key=lambda candidate: candidate.sort_key)
        return ranked

    def select(self, request: Union[PayinRequest, Mapping[str, Any]]) -> SelectionResult:
        """Reserve the highest-ranked endpoint that can still be claimed.

        Raises:
            InvalidRequest: If the request is malformed or the amount is outside every tier.
            NoEligibleEndpoint: If no endpoint passes the filters.
            PoolExhausted: If every reservation attempt was lost or the deadline passed.
        """
        payin = parse_request(request)
        request_tier = amount_tier_for(payin.amount, self._settings.tier_bands)
        ranked = self.rank(payin)
        if not ranked:
            logger.warning(
                "No eligible endpoint amount=%s tier=%s city=%s state=%s",
                payin.amount,
                request_tier.value,
                payin.user_city,
                payin.user_state,
            )
            raise NoEligibleEndpoint(
                "No eligible endpoint for amount {0}".format(payin.amount),
                amount=payin.amount,
                amount_tier=request_tier.value,
            )

        selection = self._settings.selection
        deadline = self._timer() + selection.reservation_timeout_sec
        attempts = 0
        for candidate in ranked[: selection.max_reservation_attempts]:
            if self._timer() > deadline:
                logger.warning("Reservation deadline passed after attempts=%d amount=%s", attempts, payin.amount)
                break
            attempts += 1
            endpoint = candidate.endpoint
            is_probe = candidate.breaker_state == CircuitState.HALF_OPEN
            if is_probe and not self._monitor.acquire_probe(endpoint.bank_name):
                logger.info("Probe slot taken bank=%s endpoint_id=%s", endpoint.bank_name, endpoint.id)
                continue

            try:
                reservation = self._registry.reserve(endpoint.document_id, payin.amount, is_probe=is_probe)
            except Exception:
                if is_probe:
                    self._monitor.release_probe(endpoint.bank_name)
                raise
            if reservation is None:
                if is_probe:
                    self._monitor.release_probe(endpoint.bank_name)
                continue

            if self._timer() > deadline:
                logger.warning("Reservation completed after deadline; releasing reservation_id=%s", reservation.id)
                self._release(reservation, is_probe)
                break

            return self._commit(payin, request_tier, candidate, reservation, ranked, attempts, is_probe)

        raise PoolExhausted(
            "Could not reserve any endpoint for amount {0}".format(payin.amount),
            amount=payin.amount,
            attempts=attempts,
            candidates=len(ranked),
        )

    def _commit(
        self,
        payin: PayinRequest,
        request_tier: AmountTier,
        candidate: RankedCandidate,
        reservation: ReservationModel,
        ranked: List[RankedCandidate],
        attempts: int,
        is_probe: bool,
    ) -> SelectionResult:
        endpoint = candidate.endpoint
        fallback_chain = self._fallback_chain(endpoint, ranked)
        try:
            log = self._stats.record_selection(
                payin=payin,
                endpoint=endpoint,
                request_tier=request_tier,
                result=candidate.result,
                reservation_id=reservation.document_id,
                candidate_count=len(ranked),
                attempts=attempts,
                fallback_chain=fallback_chain,
            )
        except Exception:
            logger.exception("Selection log write failed; releasing reservation_id=%s", reservation.id)
            self._release(reservation, is_probe)
            raise

        result = SelectionResult(
            endpoint_id=endpoint.document_id,
            upi_id=endpoint.upi_id,
            holder_name=endpoint.holder_name,
            trader_id=endpoint.trader_id,
            bank=endpoint.bank_name,
            score=candidate.result.score,
            amount=payin.amount,
            amount_tier=request_tier,
            tier_match=candidate.result.tier_match,
            geo_match=candidate.result.geo_match,
            geo_boost=candidate.result.geo_boost,
            reservation_id=reservation.document_id,
            is_probe=is_probe,
            attempts=attempts,
            fallback_chain=fallback_chain,
            score_breakdown=dict(candidate.result.breakdown),
            selection_log_id=log.id,
        )
        logger.info(
            "Endpoint selected endpoint_id=%s bank=%s amount=%s score=%.2f tier=%s geo=%s attempts=%d probe=%s",
            result.endpoint_id,
            result.bank,
            result.amount,
            result.score,
            result.tier_match.value,
            result.geo_match.value,
            attempts,
            is_probe,
        )
        self._event_bus.publish(
            SELECTION_MADE,
            {
                "endpoint_id": result.endpoint_id,
                "bank": result.bank,
                "amount": result.amount,
                "score": result.score,
                "tier_match": result.tier_match.value,
                "geo_match": result.geo_match.value,
                "reservation_id": result.reservation_id,
            },
        )
        return result

    def _fallback_chain(self, chosen: EndpointModel, ranked: List[RankedCandidate]) -> List[str]:
        """Next-best endpoint ids, one per trader, excluding the chosen trader."""
        seen_traders = {chosen.trader_id}
        chain: List[str] = []
        for candidate in ranked:
            if len(chain) >= self._settings.selection.fallback_chain_size:
                break
            endpoint = candidate.endpoint
            if endpoint.trader_id in seen_traders or candidate.breaker_state != CircuitState.CLOSED:
                continue
            seen_traders.add(endpoint.trader_id)
            chain.append(endpoint.document_id)
        return chain

    def _release(self, reservation: ReservationModel, is_probe: bool) -> None:
        self._registry.abort_reservation(reservation)
        if is_probe:
            self._monitor.release_probe(reservation.bank_name)
