"""Per-transaction capacity reservation taken at selection time."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from .base import Amount, BaseDocumentModel
from .enums import PayinOutcome, ReservationStatus


class ReservationModel(BaseDocumentModel):
    """Capacity hold on one endpoint, finalized exactly once by an outcome report."""

    endpoint_id: str = Field(..., min_length=1)
    bank_key: str = Field(..., min_length=1)
    bank_name: str = Field(..., min_length=1)
    trader_id: str = Field(..., min_length=1)
    amount: Amount = Field(..., gt=0)
    is_probe: bool = Field(default=False)
    status: ReservationStatus = Field(default=ReservationStatus.HELD)
    expires_at: datetime
    outcome: Optional[PayinOutcome] = Field(default=None)
    finalized_at: Optional[datetime] = Field(default=None)

    @property
    def is_held(self) -> bool:
        """Return whether the reservation still awaits its outcome."""
        return self.status == ReservationStatus.HELD
