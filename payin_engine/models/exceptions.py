"""Custom exceptions for model, repository and engine layers."""


class ModelError(Exception):
    """Base class for model-related failures."""


class ModelValidationError(ModelError):
    """Raised when model data fails custom business validation."""


class ModelNotFoundError(ModelError):
    """Raised when a requested document does not exist."""


class VersionConflictError(ModelError):
    """Raised when optimistic concurrency version checks fail."""


class EndpointBusyError(VersionConflictError):
    """Raised when an endpoint is changed while a live reservation holds it."""


class EngineError(Exception):
    """Base class for routing failures surfaced to the request-handling layer."""

    code = "ENGINE_ERROR"
    is_retryable = False

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        """Return an API-friendly error payload."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.is_retryable,
            "details": self.details,
        }


class InvalidRequest(EngineError):
    """Malformed amount or missing required fields. Never retried."""

    code = "INVALID_REQUEST"


class NoEligibleEndpoint(EngineError):
    """No endpoint passed the tier, capacity and breaker filters."""

    code = "NO_ELIGIBLE_ENDPOINT"
    is_retryable = True


class PoolExhausted(EngineError):
    """Candidates existed but every reservation attempt was lost or timed out."""

    code = "POOL_EXHAUSTED"
    is_retryable = True


class BreakerResetConflict(EngineError):
    """Admin reset raced an automatic breaker transition."""

    code = "BREAKER_RESET_CONFLICT"
