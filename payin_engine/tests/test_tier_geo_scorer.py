"""Unit tests for tier and geo scoring."""

import unittest

from payin_engine.core.config import DEFAULT_TIER_BANDS, ScoringWeights
from payin_engine.models.enums import AmountTier, CircuitState, GeoMatch, TierMatch
from payin_engine.models.exceptions import InvalidRequest
from payin_engine.models.payins import PayinRequest
from payin_engine.services.tier_geo_scorer import amount_tier_for, match_geo, match_tier, score_endpoint
from payin_engine.tests.helpers import make_endpoint


WEIGHTS = ScoringWeights()


class AmountTierTests(unittest.TestCase):
    """Tier band lookup."""

    def test_band_edges(self) -> None:
        """Upper edges belong to their band and only the first lower edge is inclusive."""
        self.assertEqual(amount_tier_for(100, DEFAULT_TIER_BANDS), AmountTier.MICRO)
        self.assertEqual(amount_tier_for(1000, DEFAULT_TIER_BANDS), AmountTier.MICRO)
        self.assertEqual(amount_tier_for(1001, DEFAULT_TIER_BANDS), AmountTier.SMALL)
        self.assertEqual(amount_tier_for(15000, DEFAULT_TIER_BANDS), AmountTier.MEDIUM)
        self.assertEqual(amount_tier_for(100000, DEFAULT_TIER_BANDS), AmountTier.XLARGE)

    def test_fractional_amounts_between_bands(self) -> None:
        """Amounts just above a band edge fall into the next band."""
        self.assertEqual(amount_tier_for(1000.5, DEFAULT_TIER_BANDS), AmountTier.SMALL)
        self.assertEqual(amount_tier_for(5000.01, DEFAULT_TIER_BANDS), AmountTier.MEDIUM)
        self.assertEqual(amount_tier_for(15000.5, DEFAULT_TIER_BANDS), AmountTier.LARGE)
        self.assertEqual(amount_tier_for(50000.99, DEFAULT_TIER_BANDS), AmountTier.XLARGE)

    def test_out_of_band_amount_is_invalid(self) -> None:
        """Amounts outside every band raise InvalidRequest."""
        for amount in (50, 100001):
            with self.assertRaises(InvalidRequest):
                amount_tier_for(amount, DEFAULT_TIER_BANDS)

    def test_tier_match_levels(self) -> None:
        """Neighbouring bands are adjacent, farther ones incompatible."""
        self.assertEqual(match_tier(AmountTier.MEDIUM, AmountTier.MEDIUM, DEFAULT_TIER_BANDS), TierMatch.EXACT)
        self.assertEqual(match_tier(AmountTier.MEDIUM, AmountTier.SMALL, DEFAULT_TIER_BANDS), TierMatch.ADJACENT)
        self.assertEqual(match_tier(AmountTier.XLARGE, AmountTier.LARGE, DEFAULT_TIER_BANDS), TierMatch.ADJACENT)
        self.assertEqual(match_tier(AmountTier.MEDIUM, AmountTier.MICRO, DEFAULT_TIER_BANDS), TierMatch.NONE)


class GeoMatchTests(unittest.TestCase):
    """Location affinity."""

    def test_city_match_ignores_case_and_whitespace(self) -> None:
        """City comparison is normalized."""
        self.assertEqual(match_geo("Mumbai", None, " mumbai ", "Maharashtra", WEIGHTS), (GeoMatch.CITY, 15))

    def test_state_match_when_city_differs(self) -> None:
        """State match is the fallback."""
        self.assertEqual(
            match_geo("Pune", "Maharashtra", "Mumbai", "MAHARASHTRA", WEIGHTS),
            (GeoMatch.STATE, 8),
        )

    def test_no_location_data_means_no_boost(self) -> None:
        """Missing data on either side gives no boost."""
        self.assertEqual(match_geo(None, None, "Mumbai", "Maharashtra", WEIGHTS), (GeoMatch.NONE, 0))
        self.assertEqual(match_geo("Mumbai", "Maharashtra", None, None, WEIGHTS), (GeoMatch.NONE, 0))

    def test_city_boost_exceeds_state_boost(self) -> None:
        """A city match is always worth more than a state match."""
        _, city = match_geo("Delhi", "Delhi", "Delhi", "Delhi", WEIGHTS)
        _, state = match_geo("Noida", "Delhi", "Delhi", "Delhi", WEIGHTS)
        self.assertGreater(city, state)

    def test_state_match_always_earns_a_boost(self) -> None:
        """Geo weights that would round a state boost to zero are rejected."""
        for geo_state in (0, 0.4):
            with self.assertRaises(ValueError):
                ScoringWeights(geo_city=15, geo_state=geo_state)
        with self.assertRaises(ValueError):
            ScoringWeights(geo_city=8.4, geo_state=8)

        geo_match, boost = match_geo("Pune", "Maharashtra", "Mumbai", "Maharashtra", ScoringWeights(geo_state=1))
        self.assertEqual(geo_match, GeoMatch.STATE)
        self.assertEqual(boost, 1)


class ScoreEndpointTests(unittest.TestCase):
    """Composite score."""

    def test_exact_tier_with_city_match(self) -> None:
        """Score adds tier, geo and success terms and subtracts utilization."""
        endpoint = make_endpoint("ep_1", bank_city="Mumbai", amount_tier=AmountTier.SMALL)
        result = score_endpoint(PayinRequest(amount=3000, user_city="Mumbai"), endpoint, WEIGHTS, DEFAULT_TIER_BANDS)
        self.assertIsNotNone(result)
        self.assertEqual(result.tier_match, TierMatch.EXACT)
        self.assertEqual(result.geo_match, GeoMatch.CITY)
        self.assertEqual(result.geo_boost, 15)
        self.assertEqual(result.score, 75.0)

    def test_headroom_penalty_uses_daily_utilization(self) -> None:
        """Half-used endpoints lose half the headroom penalty."""
        endpoint = make_endpoint("ep_1", daily_limit=10000, per_txn_limit=10000, daily_volume=5000)
        result = score_endpoint(PayinRequest(amount=3000), endpoint, WEIGHTS, DEFAULT_TIER_BANDS)
        self.assertEqual(result.breakdown["headroom"], -2.0)
        self.assertEqual(result.score, 58.0)

    def test_incompatible_tier_is_excluded(self) -> None:
        """Two bands apart returns no score."""
        endpoint = make_endpoint("ep_1", amount_tier=AmountTier.LARGE)
        self.assertIsNone(score_endpoint(PayinRequest(amount=3000), endpoint, WEIGHTS, DEFAULT_TIER_BANDS))

    def test_worst_exact_beats_best_adjacent(self) -> None:
        """Default weights keep tier precedence over every other term."""
        worst_exact = make_endpoint(
            "ep_exact",
            amount_tier=AmountTier.SMALL,
            success_rate=0.0,
            daily_limit=10000,
            per_txn_limit=10000,
            daily_volume=10000,
        )
        best_adjacent = make_endpoint("ep_adj", amount_tier=AmountTier.MEDIUM, bank_city="Mumbai", success_rate=100.0)
        request = PayinRequest(amount=3000, user_city="Mumbai")
        exact = score_endpoint(request, worst_exact, WEIGHTS, DEFAULT_TIER_BANDS)
        adjacent = score_endpoint(request, best_adjacent, WEIGHTS, DEFAULT_TIER_BANDS)
        self.assertGreater(exact.score, adjacent.score)

    def test_half_open_penalty_applies_when_configured(self) -> None:
        """A recovering bank can be de-prioritized."""
        weights = ScoringWeights(half_open_penalty=5.0)
        endpoint = make_endpoint("ep_1")
        closed = score_endpoint(PayinRequest(amount=3000), endpoint, weights, DEFAULT_TIER_BANDS)
        half_open = score_endpoint(
            PayinRequest(amount=3000), endpoint, weights, DEFAULT_TIER_BANDS, breaker_state=CircuitState.HALF_OPEN
        )
        self.assertEqual(closed.score - half_open.score, 5.0)

    def test_scoring_is_deterministic(self) -> None:
        """Identical inputs give identical results."""
        endpoint = make_endpoint("ep_1", bank_state="Karnataka", success_rate=87.5)
        request = PayinRequest(amount=2500, user_state="karnataka")
        first = score_endpoint(request, endpoint, WEIGHTS, DEFAULT_TIER_BANDS)
        second = score_endpoint(request, endpoint, WEIGHTS, DEFAULT_TIER_BANDS)
        self.assertEqual(first, second)


if __name__ == "__main__":
    unittest.main()
