"""Reusable enums for payin routing domain models."""

from enum import Enum


class StringEnum(str, Enum):
    """Base enum class with string behavior for JSON serialization."""


class AmountTier(StringEnum):
    """Amount bands an endpoint is configured to serve."""

    MICRO = "micro"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    XLARGE = "xlarge"


class TierMatch(StringEnum):
    """How an endpoint's tier relates to the request amount's band."""

    EXACT = "exact"
    ADJACENT = "adjacent"
    NONE = "none"


class GeoMatch(StringEnum):
    """Location affinity between the paying user and the endpoint's bank branch."""

    CITY = "city"
    STATE = "state"
    NONE = "none"


class CircuitState(StringEnum):
    """Per-bank circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class PayinOutcome(StringEnum):
    """Terminal outcomes reported for a reserved endpoint."""

    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class ReservationStatus(StringEnum):
    """Reservation lifecycle states."""

    HELD = "HELD"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class AlertType(StringEnum):
    """Engine alert categories."""

    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    HIGH_FAILURE_RATE = "HIGH_FAILURE_RATE"


class AlertSeverity(StringEnum):
    """Alert severity levels."""

    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


OUTCOME_TO_RESERVATION_STATUS = {
    PayinOutcome.COMPLETED: ReservationStatus.COMPLETED,
    PayinOutcome.FAILED: ReservationStatus.FAILED,
    PayinOutcome.EXPIRED: ReservationStatus.EXPIRED,
}
