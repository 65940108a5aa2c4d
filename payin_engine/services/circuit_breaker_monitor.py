"""Per-bank circuit breakers driven by reported outcomes and the engine ticker."""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from payin_engine.core.config import BreakerSettings
from payin_engine.models.base import normalize_bank_key, utc_now
from payin_engine.models.circuit_breakers import (
    CircuitBreakerModel,
    CircuitTransitionModel,
    OutcomeSample,
    compute_failure_rate,
)
from payin_engine.models.enums import AlertSeverity, AlertType, CircuitState
from payin_engine.models.exceptions import BreakerResetConflict, VersionConflictError
from payin_engine.models.repositories import CircuitBreakerRepository, TransitionRepository

from .alert_service import AlertService
from .event_bus import CIRCUIT_TRANSITION, EngineEventBus


logger = logging.getLogger(__name__)

_MAX_CAS_ATTEMPTS = 10


@dataclass(frozen=True)
class Transition:
    """A committed breaker state change."""

    bank_key: str
    bank_name: str
    from_state: CircuitState
    to_state: CircuitState
    reason: str
    failure_rate: float
    sample_count: int
    actor: str = "engine"


class CircuitBreakerMonitor:
    """Tracks bank health and gates selection on breaker state.

    A missing breaker document behaves as CLOSED with an empty window. Every write
    goes through compare-and-set against the stored version.
    """

    def __init__(
        self,
        breakers: CircuitBreakerRepository,
        transitions: TransitionRepository,
        alert_service: AlertService,
        settings: BreakerSettings,
        event_bus: EngineEventBus,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._breakers = breakers
        self._transitions = transitions
        self._alerts = alert_service
        self._settings = settings
        self._event_bus = event_bus
        self._clock = clock

    @property
    def settings(self) -> BreakerSettings:
        return self._settings

    def get(self, bank_name: str) -> Optional[CircuitBreakerModel]:
        return self._breakers.find(normalize_bank_key(bank_name))

    def state_of(self, bank_name: str) -> CircuitState:
        breaker = self.get(bank_name)
        return breaker.state if breaker is not None else CircuitState.CLOSED

    def is_eligible(self, bank_name: str) -> bool:
        """CLOSED banks are always eligible; HALF_OPEN ones only while a probe slot is free."""
        breaker = self.get(bank_name)
        if breaker is None or breaker.state == CircuitState.CLOSED:
            return True
        if breaker.state == CircuitState.OPEN:
            return False
        return breaker.probes_in_flight < self._settings.half_open_max_probes

    def acquire_probe(self, bank_name: str) -> bool:
        """Claim a HALF_OPEN probe slot. Returns False when none is free."""
        key = normalize_bank_key(bank_name)
        for _ in range(_MAX_CAS_ATTEMPTS):
            breaker = self._breakers.find(key)
            if breaker is None or breaker.state != CircuitState.HALF_OPEN:
                return False
            if breaker.probes_in_flight >= self._settings.half_open_max_probes:
                return False
            updated = breaker.next_version(probes_in_flight=breaker.probes_in_flight + 1, updated_at=self._clock())
            if self._breakers.compare_and_set(updated, breaker.version):
                logger.info("Probe slot acquired bank=%s in_flight=%d", key, updated.probes_in_flight)
                return True
        return False

    def release_probe(self, bank_name: str) -> None:
        """Give back a probe slot whose reservation ended without a verdict."""
        key = normalize_bank_key(bank_name)
        for _ in range(_MAX_CAS_ATTEMPTS):
            breaker = self._breakers.find(key)
            if breaker is None or breaker.probes_in_flight == 0:
                return
            updated = breaker.next_version(probes_in_flight=breaker.probes_in_flight - 1, updated_at=self._clock())
            if self._breakers.compare_and_set(updated, breaker.version):
                return
        logger.warning("Could not release probe slot bank=%s", key)

    def record_outcome(self, bank_name: str, sample_id: str, success: bool, is_probe: bool = False) -> CircuitState:
        """Add one terminal outcome to the bank window and apply any transition.

        Recording the same ``sample_id`` twice has no effect.
        """
        key = normalize_bank_key(bank_name)
        for _ in range(_MAX_CAS_ATTEMPTS):
            now = self._clock()
            current = self._breakers.find(key)
            if current is None:
                current = CircuitBreakerModel(id=key, bank_name=bank_name.strip(), created_at=now, updated_at=now)
                try:
                    current = self._breakers.create(current)
                except VersionConflictError:
                    continue
            if current.has_sample(sample_id):
                return current.state

            updated, transition = self._apply_sample(current, OutcomeSample(sample_id=sample_id, at=now, success=success), is_probe, now)
            if self._breakers.compare_and_set(updated, current.version):
                if transition is not None:
                    self._after_transition(transition)
                return updated.state
        raise VersionConflictError("Could not record outcome for bank={0}".format(key))

    def tick(self) -> List[Transition]:
        """Move OPEN breakers past their cooldown to HALF_OPEN and prune stale windows."""
        cooldown = timedelta(minutes=self._settings.cooldown_minutes)
        transitions: List[Transition] = []
        for breaker in self._breakers.list_all():
            for _ in range(_MAX_CAS_ATTEMPTS):
                now = self._clock()
                current = self._breakers.find(breaker.document_id)
                if current is None:
                    break
                if current.state == CircuitState.OPEN and current.cooldown_elapsed(now, cooldown):
                    updated = current.next_version(
                        state=CircuitState.HALF_OPEN,
                        probes_in_flight=0,
                        last_transition_at=now,
                        updated_at=now,
                    )
                    transition = self._transition(current, CircuitState.HALF_OPEN, "cooldown elapsed", current.failure_rate, len(current.window))
                elif current.state == CircuitState.CLOSED:
                    window = current.samples_since(now - timedelta(minutes=self._settings.window_minutes))
                    if len(window) == len(current.window):
                        break
                    updated = current.next_version(window=window, failure_rate=compute_failure_rate(window), updated_at=now)
                    transition = None
                else:
                    break
                if self._breakers.compare_and_set(updated, current.version):
                    if transition is not None:
                        self._after_transition(transition)
                        transitions.append(transition)
                    break
        return transitions

    def reset(self, bank_name: str, actor: str = "admin") -> Dict[str, Any]:
        """Force a bank breaker to CLOSED with a fresh window.

        A reset that races an automatic transition overwrites it; the conflict
        is logged.
        """
        key = normalize_bank_key(bank_name)
        if self._breakers.find(key) is None:
            return {"success": False, "error": "No circuit breaker found for bank {0}".format(bank_name)}

        conflicted = False
        for _ in range(_MAX_CAS_ATTEMPTS):
            now = self._clock()
            current = self._breakers.find(key)
            if current is None:
                return {"success": False, "error": "No circuit breaker found for bank {0}".format(bank_name)}
            updated = current.next_version(
                state=CircuitState.CLOSED,
                failure_rate=0.0,
                opened_at=None,
                window=[],
                probes_in_flight=0,
                last_transition_at=now,
                updated_at=now,
            )
            if self._breakers.compare_and_set(updated, current.version):
                transition = self._transition(current, CircuitState.CLOSED, "manual reset", 0.0, 0, actor=actor)
                self._after_transition(transition)
                return {
                    "success": True,
                    "bank": current.bank_name,
                    "previousState": current.state.value,
                    "state": CircuitState.CLOSED.value,
                    "conflict": conflicted,
                }
            conflicted = True
            conflict = BreakerResetConflict(
                "Reset raced an automatic transition; retrying", bank=key, actor=actor
            )
            logger.warning("%s bank=%s actor=%s", conflict.message, key, actor)
        exhausted = BreakerResetConflict("Reset could not be applied", bank=key)
        return {"success": False, "error": exhausted.message, "code": exhausted.code}

    def list_breakers(self) -> List[CircuitBreakerModel]:
        return self._breakers.list_all()

    def get_status(self, active_counts: Dict[str, Tuple[str, int]]) -> List[Dict[str, Any]]:
        """Return breaker status for every bank with a breaker or an endpoint."""
        breakers = {breaker.document_id: breaker for breaker in self._breakers.list_all()}
        keys = set(breakers) | set(active_counts)
        status = []
        for key in keys:
            breaker = breakers.get(key)
            name, active = active_counts.get(key, (breaker.bank_name if breaker else key, 0))
            status.append(
                {
                    "bank": breaker.bank_name if breaker else name,
                    "state": (breaker.state if breaker else CircuitState.CLOSED).value,
                    "failureRate": round((breaker.failure_rate if breaker else 0.0) * 100.0, 2),
                    "sampleCount": len(breaker.window) if breaker else 0,
                    "openedAt": breaker.opened_at.isoformat() if breaker and breaker.opened_at else None,
                    "probesInFlight": breaker.probes_in_flight if breaker else 0,
                    "activeEndpoints": active,
                }
            )
        status.sort(key=lambda item: item["bank"].lower())
        return status

    def transition_history(self, bank_name: Optional[str] = None, limit: int = 100) -> List[CircuitTransitionModel]:
        entries = self._transitions.query(limit=None)
        if bank_name:
            key = normalize_bank_key(bank_name)
            entries = [entry for entry in entries if entry.bank_key == key]
        return entries[:limit]

    # ── Internals ────────────────────────────────────────────────────────

    def _apply_sample(
        self,
        current: CircuitBreakerModel,
        sample: OutcomeSample,
        is_probe: bool,
        now: datetime,
    ) -> Tuple[CircuitBreakerModel, Optional[Transition]]:
        window = current.samples_since(now - timedelta(minutes=self._settings.window_minutes)) + [sample]
        rate = compute_failure_rate(window)

        if current.state == CircuitState.CLOSED:
            if len(window) >= self._settings.min_samples and rate > self._settings.failure_threshold:
                updated = current.next_version(
                    state=CircuitState.OPEN,
                    window=window,
                    failure_rate=rate,
                    opened_at=now,
                    last_transition_at=now,
                    updated_at=now,
                )
                return updated, self._transition(current, CircuitState.OPEN, "failure rate above threshold", rate, len(window))
            return current.next_version(window=window, failure_rate=rate, updated_at=now), None

        if current.state == CircuitState.HALF_OPEN and is_probe:
            probes = max(0, current.probes_in_flight - 1)
            if sample.success:
                updated = current.next_version(
                    state=CircuitState.CLOSED,
                    window=[],
                    failure_rate=0.0,
                    opened_at=None,
                    probes_in_flight=probes,
                    last_transition_at=now,
                    updated_at=now,
                )
                return updated, self._transition(current, CircuitState.CLOSED, "probe succeeded", 0.0, 0)
            updated = current.next_version(
                state=CircuitState.OPEN,
                window=window,
                failure_rate=rate,
                opened_at=now,
                probes_in_flight=probes,
                last_transition_at=now,
                updated_at=now,
            )
            return updated, self._transition(current, CircuitState.OPEN, "probe failed", rate, len(window))

        # OPEN, or a non-probe outcome while HALF_OPEN: kept for idempotence, no transition.
        return current.next_version(window=window, failure_rate=rate, updated_at=now), None

    @staticmethod
    def _transition(
        current: CircuitBreakerModel,
        to_state: CircuitState,
        reason: str,
        failure_rate: float,
        sample_count: int,
        actor: str = "engine",
    ) -> Transition:
        return Transition(
            bank_key=current.document_id,
            bank_name=current.bank_name,
            from_state=current.state,
            to_state=to_state,
            reason=reason,
            failure_rate=failure_rate,
            sample_count=sample_count,
            actor=actor,
        )

    def _after_transition(self, transition: Transition) -> None:
        now = self._clock()
        log_level = logging.WARNING if transition.to_state == CircuitState.OPEN else logging.INFO
        logger.log(
            log_level,
            "Circuit transition bank=%s %s -> %s reason=%s failure_rate=%.2f samples=%d actor=%s",
            transition.bank_name,
            transition.from_state.value,
            transition.to_state.value,
            transition.reason,
            transition.failure_rate,
            transition.sample_count,
            transition.actor,
        )
        try:
            self._transitions.append(
                CircuitTransitionModel(
                    id="ctr_{0}".format(uuid4().hex[:16]),
                    bank_key=transition.bank_key,
                    bank_name=transition.bank_name,
                    from_state=transition.from_state,
                    to_state=transition.to_state,
                    reason=transition.reason,
                    failure_rate=transition.failure_rate,
                    sample_count=transition.sample_count,
                    actor=transition.actor,
                    created_at=now,
                    updated_at=now,
                )
            )
        except Exception:
            logger.exception("Failed to write circuit transition audit bank=%s", transition.bank_key)

        if transition.from_state == CircuitState.CLOSED and transition.to_state == CircuitState.OPEN:
            try:
                self._alerts.raise_alert(
                    AlertType.CIRCUIT_OPEN,
                    title="Circuit opened for {0}".format(transition.bank_name),
                    severity=AlertSeverity.CRITICAL,
                    message="Failure rate {0:.1f}% over {1} samples".format(
                        transition.failure_rate * 100.0, transition.sample_count
                    ),
                    bank_name=transition.bank_name,
                    data={"failure_rate": transition.failure_rate, "sample_count": transition.sample_count},
                )
            except Exception:
                logger.exception("Failed to raise circuit-open alert bank=%s", transition.bank_key)

        self._event_bus.publish(
            CIRCUIT_TRANSITION,
            {
                "bank": transition.bank_name,
                "from": transition.from_state.value,
                "to": transition.to_state.value,
                "reason": transition.reason,
                "failure_rate": transition.failure_rate,
                "actor": transition.actor,
            },
        )
