"""Immutable audit record of a routing decision."""

from typing import Dict, List, Optional

from pydantic import ConfigDict, Field

from .base import Amount, BaseDocumentModel
from .enums import AmountTier, GeoMatch, TierMatch


class SelectionLogModel(BaseDocumentModel):
    """One selection decision. Written once, never mutated."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    endpoint_id: str = Field(..., min_length=1)
    upi_id: str = Field(..., min_length=3)
    trader_id: str = Field(..., min_length=1)
    bank_name: str = Field(..., min_length=1)
    reservation_id: str = Field(..., min_length=1)
    merchant_id: Optional[str] = Field(default=None)
    request_id: Optional[str] = Field(default=None)

    amount: Amount = Field(..., gt=0)
    amount_tier: AmountTier
    score: float
    score_breakdown: Dict[str, float] = Field(default_factory=dict)
    tier_match: TierMatch
    geo_match: GeoMatch = Field(default=GeoMatch.NONE)
    geo_boost: int = Field(default=0, ge=0)

    user_city: Optional[str] = Field(default=None)
    user_state: Optional[str] = Field(default=None)
    endpoint_city: Optional[str] = Field(default=None)
    endpoint_state: Optional[str] = Field(default=None)

    candidate_count: int = Field(default=0, ge=0)
    attempts: int = Field(default=1, ge=1)
    fallback_chain: List[str] = Field(default_factory=list)
