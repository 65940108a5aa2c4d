"""Endpoint pool with versioned reservation, release and statistics updates."""

from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from payin_engine.core.config import SelectionSettings
from payin_engine.models.base import utc_now
from payin_engine.models.endpoints import EndpointModel
from payin_engine.models.enums import OUTCOME_TO_RESERVATION_STATUS, AmountTier, PayinOutcome
from payin_engine.models.exceptions import EndpointBusyError, VersionConflictError
from payin_engine.models.repositories import EndpointRepository, ReservationRepository
from payin_engine.models.reservations import ReservationModel

from .event_bus import ENDPOINT_UPDATED, EngineEventBus


logger = logging.getLogger(__name__)

_MAX_CAS_ATTEMPTS = 10

Mutator = Callable[[EndpointModel], Dict[str, Any]]


def _round_amount(value: float) -> float:
    return round(max(0.0, value), 2)


class EndpointRegistry:
    """Owns the endpoint pool and every write to an endpoint's committed capacity.

    All writes re-read the stored document and commit through compare-and-set, so
    no caller-held snapshot is ever written back.
    """

    def __init__(
        self,
        endpoints: EndpointRepository,
        reservations: ReservationRepository,
        settings: SelectionSettings,
        event_bus: EngineEventBus,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._endpoints = endpoints
        self._reservations = reservations
        self._settings = settings
        self._event_bus = event_bus
        self._clock = clock

    # ── Pool management ──────────────────────────────────────────────────

    def register(self, endpoint: EndpointModel) -> EndpointModel:
        """Add an endpoint to the pool, assigning an id when missing."""
        if not endpoint.id:
            endpoint = endpoint.model_copy(update={"id": "upi_{0}".format(uuid4().hex[:16])})
        created = self._endpoints.create(endpoint)
        logger.info(
            "Endpoint registered endpoint_id=%s trader_id=%s bank=%s tier=%s",
            created.id,
            created.trader_id,
            created.bank_name,
            created.amount_tier.value,
        )
        self._publish(created, "registered")
        return created

    def get(self, endpoint_id: str) -> EndpointModel:
        """Raises ``ModelNotFoundError`` for unknown endpoints."""
        return self._endpoints.get_by_id(endpoint_id)

    def list_endpoints(self, active_only: bool = False) -> List[EndpointModel]:
        endpoints = self._endpoints.list_all()
        if active_only:
            endpoints = [endpoint for endpoint in endpoints if endpoint.active]
        endpoints.sort(key=lambda endpoint: endpoint.document_id)
        return endpoints

    def eligible_endpoints(self, amount: float) -> List[EndpointModel]:
        """Return active, unlocked endpoints with capacity for ``amount``."""
        now = self._clock()
        return [endpoint for endpoint in self._endpoints.list_all() if endpoint.is_eligible_for(amount, now)]

    def active_counts_by_bank(self) -> Dict[str, Tuple[str, int]]:
        """Map bank key to ``(display name, active endpoint count)``."""
        counts: Dict[str, Tuple[str, int]] = {}
        for endpoint in self._endpoints.list_all():
            name, count = counts.get(endpoint.bank_key, (endpoint.bank_name, 0))
            counts[endpoint.bank_key] = (name, count + (1 if endpoint.active else 0))
        return counts

    def set_active(self, endpoint_id: str, active: bool) -> EndpointModel:
        """Add to or remove from the pool.

        Raises:
            EndpointBusyError: If a live reservation holds the endpoint.
        """

        def _toggle(current: EndpointModel) -> Dict[str, Any]:
            if current.is_locked(self._clock()):
                raise EndpointBusyError(
                    "Endpoint {0} is reserved by {1}".format(current.id, current.locked_by)
                )
            return {"active": active}

        updated = self._mutate(endpoint_id, _toggle)
        logger.info("Endpoint activation changed endpoint_id=%s active=%s", endpoint_id, active)
        self._publish(updated, "activated" if active else "deactivated")
        return updated

    def update_limits(
        self,
        endpoint_id: str,
        amount_tier: Optional[AmountTier] = None,
        daily_limit: Optional[float] = None,
        per_txn_limit: Optional[float] = None,
    ) -> EndpointModel:
        """Edit tier and limits of an endpoint."""
        changes: Dict[str, Any] = {}
        if amount_tier is not None:
            changes["amount_tier"] = AmountTier(amount_tier)
        if daily_limit is not None:
            changes["daily_limit"] = float(daily_limit)
        if per_txn_limit is not None:
            changes["per_txn_limit"] = float(per_txn_limit)
        if not changes:
            return self.get(endpoint_id)

        def _apply(current: EndpointModel) -> Dict[str, Any]:
            merged = dict(changes)
            limit = merged.get("daily_limit", current.daily_limit)
            if merged.get("per_txn_limit", current.per_txn_limit) > limit:
                merged["per_txn_limit"] = limit
            return merged

        updated = self._mutate(endpoint_id, _apply)
        self._publish(updated, "limits_updated")
        return updated

    def update_geo(self, endpoint_id: str, bank_city: Optional[str], bank_state: Optional[str]) -> EndpointModel:
        updated = self._mutate(endpoint_id, lambda current: {"bank_city": bank_city, "bank_state": bank_state})
        self._publish(updated, "geo_updated")
        return updated

    def reset_daily_counters(self) -> int:
        """Zero daily volume and count, keeping the amount of a reservation still HELD.

        A hold past its lock expiry is carried too; the sweep releases it later.
        """
        reset = 0
        for endpoint in self._endpoints.list_all():

            def _reset(current: EndpointModel) -> Dict[str, Any]:
                if current.locked_by:
                    hold = self._reservations.find(current.locked_by)
                    if hold is not None and hold.is_held:
                        return {"daily_volume": hold.amount, "daily_count": 1}
                return {"daily_volume": 0.0, "daily_count": 0}

            self._mutate(endpoint.document_id, _reset)
            reset += 1
        logger.info("Daily endpoint counters reset count=%d", reset)
        return reset

    # ── Reservation ──────────────────────────────────────────────────────

    def reserve(self, endpoint_id: str, amount: float, is_probe: bool = False) -> Optional[ReservationModel]:
        """Atomically commit ``amount`` against an endpoint and lock it.

        Returns ``None`` when the endpoint is no longer eligible or a concurrent
        writer won the compare-and-set; the caller moves on to another candidate.
        """
        current = self._endpoints.find(endpoint_id)
        now = self._clock()
        if current is None or not current.is_eligible_for(amount, now):
            return None

        reservation_id = "rsv_{0}".format(uuid4().hex[:20])
        expires_at = now + timedelta(minutes=self._settings.reservation_hold_minutes)
        updated = current.next_version(
            daily_volume=_round_amount(current.daily_volume + amount),
            daily_count=current.daily_count + 1,
            locked_by=reservation_id,
            locked_until=expires_at,
            last_used_at=now,
        )
        if not self._endpoints.compare_and_set(updated, current.version):
            logger.info("Reservation lost compare-and-set endpoint_id=%s version=%s", endpoint_id, current.version)
            return None

        reservation = ReservationModel(
            id=reservation_id,
            endpoint_id=current.document_id,
            bank_key=current.bank_key,
            bank_name=current.bank_name,
            trader_id=current.trader_id,
            amount=amount,
            is_probe=is_probe,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        try:
            self._reservations.create(reservation)
        except Exception:
            logger.exception("Failed to persist reservation endpoint_id=%s. Releasing hold.", endpoint_id)
            self._release_capacity(current.document_id, reservation_id, amount, outcome=None)
            raise
        logger.info(
            "Endpoint reserved endpoint_id=%s reservation_id=%s amount=%s probe=%s",
            endpoint_id,
            reservation_id,
            amount,
            is_probe,
        )
        return reservation

    def find_reservation(self, reservation_id: str) -> Optional[ReservationModel]:
        return self._reservations.find(reservation_id)

    def expired_holds(self) -> List[ReservationModel]:
        return self._reservations.list_expired_holds(self._clock())

    def finalize_reservation(self, reservation: ReservationModel, outcome: PayinOutcome) -> Optional[ReservationModel]:
        """Move a HELD reservation to its terminal status exactly once.

        Returns ``None`` if another report already finalized it.
        """
        for _ in range(_MAX_CAS_ATTEMPTS):
            current = self._reservations.find(reservation.document_id)
            if current is None or not current.is_held:
                return None
            finalized = current.next_version(
                status=OUTCOME_TO_RESERVATION_STATUS[outcome],
                outcome=outcome,
                finalized_at=self._clock(),
            )
            if self._reservations.compare_and_set(finalized, current.version):
                return finalized
        raise VersionConflictError("Could not finalize reservation_id={0}".format(reservation.id))

    def apply_outcome(self, reservation: ReservationModel, outcome: PayinOutcome, counts_as_failure: bool) -> EndpointModel:
        """Unlock the endpoint, update rolling stats and release unconsumed volume."""
        return self._release_capacity(
            reservation.endpoint_id,
            reservation.document_id,
            reservation.amount,
            outcome=outcome,
            counts_as_failure=counts_as_failure,
        )

    def abort_reservation(self, reservation: ReservationModel) -> None:
        """Give back a reservation whose selection could not be completed."""
        finalized = self.finalize_reservation(reservation, PayinOutcome.EXPIRED)
        if finalized is None:
            return
        self._release_capacity(reservation.endpoint_id, reservation.document_id, reservation.amount, outcome=None)
        logger.warning("Reservation aborted reservation_id=%s endpoint_id=%s", reservation.id, reservation.endpoint_id)

    def _release_capacity(
        self,
        endpoint_id: str,
        reservation_id: str,
        amount: float,
        outcome: Optional[PayinOutcome],
        counts_as_failure: bool = False,
    ) -> EndpointModel:
        sample_size = self._settings.success_rate_sample_size

        def _apply(current: EndpointModel) -> Dict[str, Any]:
            changes: Dict[str, Any] = {}
            if current.locked_by == reservation_id:
                changes["locked_by"] = None
                changes["locked_until"] = None

            if outcome != PayinOutcome.COMPLETED:
                changes["daily_volume"] = _round_amount(current.daily_volume - amount)
                changes["daily_count"] = max(0, current.daily_count - 1)

            success: Optional[bool] = None
            if outcome == PayinOutcome.COMPLETED:
                success = True
            elif outcome == PayinOutcome.FAILED or (outcome == PayinOutcome.EXPIRED and counts_as_failure):
                success = False

            if success is not None:
                recent = (list(current.recent_outcomes) + [success])[-sample_size:]
                changes["recent_outcomes"] = recent
                changes["success_rate"] = round(100.0 * sum(recent) / len(recent), 2)
                if success:
                    changes["total_completed"] = current.total_completed + 1
                    changes["consecutive_successes"] = current.consecutive_successes + 1
                    changes["consecutive_failures"] = 0
                else:
                    changes["total_failed"] = current.total_failed + 1
                    changes["consecutive_failures"] = current.consecutive_failures + 1
                    changes["consecutive_successes"] = 0
            return changes

        return self._mutate(endpoint_id, _apply)

    # ── Internals ────────────────────────────────────────────────────────

    def _mutate(self, endpoint_id: str, mutator: Mutator) -> EndpointModel:
        """Re-read, apply ``mutator`` and compare-and-set until the write lands."""
        for _ in range(_MAX_CAS_ATTEMPTS):
            current = self._endpoints.get_by_id(endpoint_id)
            changes = mutator(current)
            if not changes:
                return current
            updated = current.next_version(**changes)
            if self._endpoints.compare_and_set(updated, current.version):
                return updated
        raise VersionConflictError("Could not update endpoint_id={0}".format(endpoint_id))

    def _publish(self, endpoint: EndpointModel, action: str) -> None:
        self._event_bus.publish(
            ENDPOINT_UPDATED,
            {
                "action": action,
                "endpoint_id": endpoint.id,
                "bank": endpoint.bank_name,
                "active": endpoint.active,
                "version": endpoint.version,
            },
        )
