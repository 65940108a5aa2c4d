"""Per-bank circuit breaker state and its transition audit trail."""

from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field

from .base import BaseDocumentModel
from .enums import CircuitState


class OutcomeSample(BaseModel):
    """One terminal outcome observed for a bank inside the rolling window."""

    sample_id: str = Field(..., min_length=1)
    at: datetime
    success: bool


class CircuitBreakerModel(BaseDocumentModel):
    """Shared health state for every endpoint of one bank.

    The document id is the normalized bank key, so all traders' endpoints at the
    same bank share a single breaker.
    """

    bank_name: str = Field(..., min_length=1)
    state: CircuitState = Field(default=CircuitState.CLOSED)
    failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    opened_at: Optional[datetime] = Field(default=None)
    window: List[OutcomeSample] = Field(default_factory=list)
    probes_in_flight: int = Field(default=0, ge=0)
    last_transition_at: Optional[datetime] = Field(default=None)

    def samples_since(self, cutoff: datetime) -> List[OutcomeSample]:
        """Return window samples observed at or after ``cutoff``."""
        return [sample for sample in self.window if sample.at >= cutoff]

    def has_sample(self, sample_id: str) -> bool:
        """Return whether ``sample_id`` was already counted."""
        return any(sample.sample_id == sample_id for sample in self.window)

    def cooldown_elapsed(self, now: datetime, cooldown: timedelta) -> bool:
        """Return whether an OPEN breaker has waited out its cooldown."""
        if self.opened_at is None:
            return True
        return now - self.opened_at >= cooldown


def compute_failure_rate(samples: List[OutcomeSample]) -> float:
    """Return failures / total for ``samples``. No samples means no failure rate."""
    if not samples:
        return 0.0
    failures = sum(1 for sample in samples if not sample.success)
    return failures / len(samples)


class CircuitTransitionModel(BaseDocumentModel):
    """Append-only audit entry written for every breaker state change."""

    bank_key: str = Field(..., min_length=1)
    bank_name: str = Field(..., min_length=1)
    from_state: CircuitState
    to_state: CircuitState
    reason: str = Field(..., min_length=3)
    failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    sample_count: int = Field(default=0, ge=0)
    actor: str = Field(default="engine")
