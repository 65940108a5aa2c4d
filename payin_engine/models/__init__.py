"""Public model package exports for the payin routing engine."""

from .alerts import AlertModel
from .base import Amount, BaseDocumentModel, as_utc, normalize_bank_key, utc_now
from .circuit_breakers import CircuitBreakerModel, CircuitTransitionModel, OutcomeSample
from .endpoints import EndpointModel
from .enums import (
    AlertSeverity,
    AlertType,
    AmountTier,
    CircuitState,
    GeoMatch,
    PayinOutcome,
    ReservationStatus,
    TierMatch,
)
from .exceptions import (
    BreakerResetConflict,
    EndpointBusyError,
    EngineError,
    InvalidRequest,
    ModelError,
    ModelNotFoundError,
    ModelValidationError,
    NoEligibleEndpoint,
    PoolExhausted,
    VersionConflictError,
)
from .payins import OutcomeAck, OutcomeReport, PayinRequest, SelectionResult
from .repositories import (
    AlertRepository,
    CircuitBreakerRepository,
    EndpointRepository,
    ReservationRepository,
    SelectionLogRepository,
    TransitionRepository,
)
from .reservations import ReservationModel
from .selection_logs import SelectionLogModel

__all__ = [
    "Amount",
    "BaseDocumentModel",
    "as_utc",
    "normalize_bank_key",
    "utc_now",
    "EndpointModel",
    "CircuitBreakerModel",
    "CircuitTransitionModel",
    "OutcomeSample",
    "SelectionLogModel",
    "AlertModel",
    "ReservationModel",
    "PayinRequest",
    "SelectionResult",
    "OutcomeReport",
    "OutcomeAck",
    "AmountTier",
    "TierMatch",
    "GeoMatch",
    "CircuitState",
    "PayinOutcome",
    "ReservationStatus",
    "AlertType",
    "AlertSeverity",
    "ModelError",
    "ModelValidationError",
    "ModelNotFoundError",
    "VersionConflictError",
    "EndpointBusyError",
    "EngineError",
    "InvalidRequest",
    "NoEligibleEndpoint",
    "PoolExhausted",
    "BreakerResetConflict",
    "EndpointRepository",
    "CircuitBreakerRepository",
    "ReservationRepository",
    "AlertRepository",
    "SelectionLogRepository",
    "TransitionRepository",
]
