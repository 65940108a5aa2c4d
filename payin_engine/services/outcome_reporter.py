"""Apply terminal payin outcomes to reservations, endpoints and bank breakers."""

import logging
from typing import Optional, Union

from payin_engine.core.config import BreakerSettings
from payin_engine.models.enums import PayinOutcome
from payin_engine.models.exceptions import InvalidRequest
from payin_engine.models.payins import OutcomeAck

from .circuit_breaker_monitor import CircuitBreakerMonitor
from .endpoint_registry import EndpointRegistry
from .event_bus import OUTCOME_APPLIED, EngineEventBus


logger = logging.getLogger(__name__)


class OutcomeReporter:
    """Finalizes reservations exactly once and feeds their verdicts back."""

    def __init__(
        self,
        registry: EndpointRegistry,
        monitor: CircuitBreakerMonitor,
        settings: BreakerSettings,
        event_bus: EngineEventBus,
    ) -> None:
        self._registry = registry
        self._monitor = monitor
        self._settings = settings
        self._event_bus = event_bus

    def report(
        self,
        endpoint_id: str,
        outcome: Union[PayinOutcome, str],
        reservation_id: Optional[str] = None,
    ) -> OutcomeAck:
        """Record ``outcome`` for the reservation held on ``endpoint_id``.

        Reports for an unknown or already finalized reservation are acknowledged
        with ``applied=False`` and change nothing.

        Raises:
            InvalidRequest: If the outcome is unknown or the reservation belongs to another endpoint.
            ModelNotFoundError: If the endpoint does not exist.
        """
        try:
            outcome = PayinOutcome(outcome)
        except ValueError as exc:
            raise InvalidRequest("Unknown outcome {0}".format(outcome), outcome=str(outcome)) from exc

        endpoint = self._registry.get(endpoint_id)
        resolved_id = reservation_id or endpoint.locked_by
        if not resolved_id:
            return self._skipped(endpoint_id, None, outcome, "no active reservation")

        reservation = self._registry.find_reservation(resolved_id)
        if reservation is None:
            return self._skipped(endpoint_id, resolved_id, outcome, "unknown reservation")
        if reservation.endpoint_id != endpoint.document_id:
            raise InvalidRequest(
                "Reservation {0} does not belong to endpoint {1}".format(resolved_id, endpoint_id),
                reservation_id=resolved_id,
                endpoint_id=endpoint_id,
            )

        finalized = self._registry.finalize_reservation(reservation, outcome)
        if finalized is None:
            return self._skipped(endpoint_id, resolved_id, outcome, "already finalized")

        counts_as_failure = outcome == PayinOutcome.FAILED or (
            outcome == PayinOutcome.EXPIRED and self._settings.expired_counts_as_failure
        )
        updated = self._registry.apply_outcome(finalized, outcome, counts_as_failure)

        if outcome == PayinOutcome.COMPLETED or counts_as_failure:
            self._monitor.record_outcome(
                finalized.bank_name,
                sample_id=finalized.document_id,
                success=outcome == PayinOutcome.COMPLETED,
                is_probe=finalized.is_probe,
            )
        elif finalized.is_probe:
            self._monitor.release_probe(finalized.bank_name)

        logger.info(
            "Outcome applied endpoint_id=%s reservation_id=%s outcome=%s amount=%s success_rate=%.2f",
            endpoint_id,
            finalized.id,
            outcome.value,
            finalized.amount,
            updated.success_rate,
        )
        self._event_bus.publish(
            OUTCOME_APPLIED,
            {
                "endpoint_id": endpoint_id,
                "reservation_id": finalized.id,
                "bank": finalized.bank_name,
                "outcome": outcome.value,
                "amount": finalized.amount,
                "success_rate": updated.success_rate,
            },
        )
        return OutcomeAck(endpoint_id=endpoint_id, reservation_id=finalized.id, outcome=outcome, applied=True)

    def sweep_expired_holds(self) -> int:
        """Report every HELD reservation past its expiry as ``expired``."""
        swept = 0
        for reservation in self._registry.expired_holds():
            try:
                ack = self.report(reservation.endpoint_id, PayinOutcome.EXPIRED, reservation.document_id)
            except Exception:
                logger.exception("Failed to expire reservation_id=%s", reservation.id)
                continue
            if ack.applied:
                swept += 1
        if swept:
            logger.info("Expired reservation holds swept count=%d", swept)
        return swept

    @staticmethod
    def _skipped(endpoint_id: str, reservation_id: Optional[str], outcome: PayinOutcome, reason: str) -> OutcomeAck:
        logger.info(
            "Outcome ignored endpoint_id=%s reservation_id=%s outcome=%s reason=%s",
            endpoint_id,
            reservation_id,
            outcome.value,
            reason,
        )
        return OutcomeAck(
            endpoint_id=endpoint_id,
            reservation_id=reservation_id,
            outcome=outcome,
            applied=False,
            reason=reason,
        )
