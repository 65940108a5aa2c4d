"""Collection endpoint (UPI) model held in the shared pool."""

from datetime import datetime
import logging
from typing import List, Optional

from pydantic import Field, field_validator, model_validator

from .base import Amount, BaseDocumentModel, normalize_bank_key
from .enums import AmountTier


logger = logging.getLogger(__name__)


class EndpointModel(BaseDocumentModel):
    """A trader-owned virtual payment address that can receive one payin at a time."""

    upi_id: str = Field(..., min_length=3)
    trader_id: str = Field(..., min_length=1)
    holder_name: Optional[str] = Field(default=None)
    bank_name: str = Field(..., min_length=1)
    ifsc: Optional[str] = Field(default=None)
    bank_city: Optional[str] = Field(default=None)
    bank_state: Optional[str] = Field(default=None)

    amount_tier: AmountTier = Field(default=AmountTier.MEDIUM)
    daily_limit: Amount = Field(default=100000.0, gt=0)
    per_txn_limit: Amount = Field(default=100000.0, gt=0)

    success_rate: float = Field(default=100.0, ge=0.0, le=100.0)
    recent_outcomes: List[bool] = Field(default_factory=list)
    daily_volume: Amount = Field(default=0.0, ge=0)
    daily_count: int = Field(default=0, ge=0)
    total_completed: int = Field(default=0, ge=0)
    total_failed: int = Field(default=0, ge=0)
    consecutive_successes: int = Field(default=0, ge=0)
    consecutive_failures: int = Field(default=0, ge=0)
    last_used_at: Optional[datetime] = Field(default=None)

    active: bool = Field(default=True)
    locked_by: Optional[str] = Field(default=None)
    locked_until: Optional[datetime] = Field(default=None)

    @field_validator("ifsc")
    @classmethod
    def _normalize_ifsc(cls, value: Optional[str]) -> Optional[str]:
        """Upper-case IFSC codes and reject malformed ones."""
        if value is None or not value.strip():
            return None
        normalized = value.strip().upper()
        if len(normalized) != 11:
            raise ValueError("ifsc must be 11 characters")
        return normalized

    @model_validator(mode="after")
    def _validate_limits(self) -> "EndpointModel":
        """Per-transaction limit cannot exceed the daily limit."""
        if self.per_txn_limit > self.daily_limit:
            logger.warning(
                "per_txn_limit clipped to daily_limit endpoint_id=%s per_txn=%s daily=%s",
                self.id,
                self.per_txn_limit,
                self.daily_limit,
            )
            object.__setattr__(self, "per_txn_limit", self.daily_limit)
        return self

    @property
    def bank_key(self) -> str:
        """Normalized bank name used to look up the bank's breaker."""
        return normalize_bank_key(self.bank_name)

    def is_locked(self, now: datetime) -> bool:
        """Return whether a live reservation currently holds this endpoint."""
        if not self.locked_by:
            return False
        return self.locked_until is None or self.locked_until > now

    def has_capacity_for(self, amount: Amount) -> bool:
        """Return whether ``amount`` fits both the per-transaction and remaining daily limit."""
        if amount > self.per_txn_limit:
            return False
        return self.daily_volume + amount <= self.daily_limit

    def is_eligible_for(self, amount: Amount, now: datetime) -> bool:
        """Active, unlocked and within limits for ``amount``."""
        return self.active and not self.is_locked(now) and self.has_capacity_for(amount)

    @property
    def utilization(self) -> float:
        """Fraction of the daily limit already committed."""
        if self.daily_limit <= 0:
            return 1.0
        return min(1.0, self.daily_volume / self.daily_limit)
