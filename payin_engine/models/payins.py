"""Request and response schemas for the selection and outcome operations."""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import Amount
from .enums import AmountTier, GeoMatch, PayinOutcome, TierMatch


class PayinRequest(BaseModel):
    """Incoming payin needing a collection endpoint."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    amount: Amount = Field(..., gt=0)
    user_city: Optional[str] = Field(default=None, alias="userCity")
    user_state: Optional[str] = Field(default=None, alias="userState")
    merchant_id: Optional[str] = Field(default=None, alias="merchantId")
    request_id: Optional[str] = Field(default=None, alias="requestId")

    @field_validator("user_city", "user_state")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        """Treat blank location strings as missing."""
        if value is None or not value.strip():
            return None
        return value


class SelectionResult(BaseModel):
    """Reserved endpoint returned to the request-handling layer."""

    endpoint_id: str
    upi_id: str
    holder_name: Optional[str] = None
    trader_id: str
    bank: str
    score: float
    amount: Amount
    amount_tier: AmountTier
    tier_match: TierMatch
    geo_match: GeoMatch
    geo_boost: int
    reservation_id: str
    is_probe: bool = False
    attempts: int = 1
    fallback_chain: List[str] = Field(default_factory=list)
    score_breakdown: Dict[str, float] = Field(default_factory=dict)
    selection_log_id: Optional[str] = None

    def to_response(self) -> dict:
        """Return the camel-cased payload of the inbound contract."""
        return {
            "endpointId": self.endpoint_id,
            "upiId": self.upi_id,
            "holderName": self.holder_name,
            "traderId": self.trader_id,
            "bank": self.bank,
            "score": self.score,
            "amountTier": self.amount_tier.value,
            "tierMatch": self.tier_match.value,
            "geoMatch": self.geo_match.value,
            "geoBoost": self.geo_boost,
            "reservationId": self.reservation_id,
            "attempts": self.attempts,
            "fallbackChain": list(self.fallback_chain),
        }


class OutcomeReport(BaseModel):
    """Terminal outcome for a previously reserved endpoint."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    endpoint_id: str = Field(..., min_length=1, alias="endpointId")
    outcome: PayinOutcome
    reservation_id: Optional[str] = Field(default=None, alias="reservationId")


class OutcomeAck(BaseModel):
    """Result of an outcome report. ``applied`` is False for duplicates."""

    endpoint_id: str
    reservation_id: Optional[str] = None
    outcome: PayinOutcome
    applied: bool
    reason: Optional[str] = None
