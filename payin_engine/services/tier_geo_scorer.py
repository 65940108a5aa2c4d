"""Pure scoring of a candidate endpoint against a payin request.

Nothing in this module touches shared state: identical inputs always produce
identical results, which keeps ranking reproducible and auditable.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

from payin_engine.core.config import ScoringWeights, TierBand
from payin_engine.models.endpoints import EndpointModel
from payin_engine.models.enums import AmountTier, CircuitState, GeoMatch, TierMatch
from payin_engine.models.exceptions import InvalidRequest
from payin_engine.models.payins import PayinRequest


@dataclass(frozen=True)
class ScoreResult:
    """Score and match details for one candidate endpoint."""

    score: float
    tier_match: TierMatch
    geo_match: GeoMatch
    geo_boost: int
    breakdown: Dict[str, float] = field(default_factory=dict)


def _normalize_place(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def amount_tier_for(amount: float, tier_bands: Sequence[TierBand]) -> AmountTier:
    """Return the tier band containing ``amount``.

    The first band includes its lower edge; later bands start just above theirs.

    Raises:
        InvalidRequest: If no configured band contains the amount.
    """
    for index, (name, low, high) in enumerate(tier_bands):
        above_low = amount >= low if index == 0 else amount > low
        if above_low and amount <= high:
            return AmountTier(name)
    raise InvalidRequest(
        "Amount {0} is outside every supported tier band".format(amount),
        amount=amount,
        min_amount=tier_bands[0][1] if tier_bands else None,
        max_amount=tier_bands[-1][2] if tier_bands else None,
    )


def match_tier(request_tier: AmountTier, endpoint_tier: AmountTier, tier_bands: Sequence[TierBand]) -> TierMatch:
    """Classify an endpoint tier as exact, adjacent or incompatible for the request tier."""
    order = [name for name, _, _ in tier_bands]
    if request_tier.value not in order or endpoint_tier.value not in order:
        return TierMatch.NONE
    distance = abs(order.index(request_tier.value) - order.index(endpoint_tier.value))
    if distance == 0:
        return TierMatch.EXACT
    if distance == 1:
        return TierMatch.ADJACENT
    return TierMatch.NONE


def match_geo(
    user_city: Optional[str],
    user_state: Optional[str],
    bank_city: Optional[str],
    bank_state: Optional[str],
    weights: ScoringWeights,
) -> Tuple[GeoMatch, int]:
    """Return the geo match level and the integer boost it earns."""
    u_city, u_state = _normalize_place(user_city), _normalize_place(user_state)
    b_city, b_state = _normalize_place(bank_city), _normalize_place(bank_state)
    if u_city and b_city and u_city == b_city:
        return GeoMatch.CITY, int(round(weights.geo_city))
    if u_state and b_state and u_state == b_state:
        return GeoMatch.STATE, int(round(weights.geo_state))
    return GeoMatch.NONE, 0


def score_endpoint(
    request: PayinRequest,
    endpoint: EndpointModel,
    weights: ScoringWeights,
    tier_bands: Sequence[TierBand],
    breaker_state: CircuitState = CircuitState.CLOSED,
) -> Optional[ScoreResult]:
    """Score ``endpoint`` for ``request``.

    Returns ``None`` when the tiers are incompatible; such an endpoint must never
    be routed to, whatever its other merits.
    """
    request_tier = amount_tier_for(request.amount, tier_bands)
    tier_match = match_tier(request_tier, endpoint.amount_tier, tier_bands)
    if tier_match == TierMatch.NONE:
        return None

    breakdown: Dict[str, float] = {}
    breakdown["tier"] = weights.tier_exact if tier_match == TierMatch.EXACT else weights.tier_adjacent

    geo_match, geo_boost = match_geo(
        request.user_city,
        request.user_state,
        endpoint.bank_city,
        endpoint.bank_state,
        weights,
    )
    if geo_boost:
        breakdown["geo"] = float(geo_boost)

    breakdown["success_rate"] = round(endpoint.success_rate * weights.success_rate_weight, 4)
    breakdown["headroom"] = -round(endpoint.utilization * weights.headroom_penalty, 4)

    if breaker_state == CircuitState.HALF_OPEN and weights.half_open_penalty:
        breakdown["bank_health"] = -weights.half_open_penalty
    if endpoint.consecutive_failures >= 2 and weights.consecutive_failure_penalty:
        breakdown["consecutive_failures"] = -round(
            endpoint.consecutive_failures * weights.consecutive_failure_penalty, 4
        )

    return ScoreResult(
        score=round(sum(breakdown.values()), 4),
        tier_match=tier_match,
        geo_match=geo_match,
        geo_boost=geo_boost,
        breakdown=breakdown,
    )
