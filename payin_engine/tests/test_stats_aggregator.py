"""Unit tests for selection logs, realtime statistics and anomaly alerts."""

from datetime import timedelta
import unittest

from payin_engine.models.enums import AlertType, GeoMatch, TierMatch
from payin_engine.tests.helpers import FakeClock, build_test_engine, make_endpoint


class StatsAggregatorTests(unittest.TestCase):
    """Statistics derived from selection logs and finalized reservations."""

    def setUp(self) -> None:
        self.clock = FakeClock()
        self.engine = build_test_engine(clock=self.clock)
        self.engine.registry.register(make_endpoint("hdfc_1", bank_city="Pune", bank_state="Maharashtra"))
        self.engine.registry.register(
            make_endpoint("sbi_1", bank_name="SBI", amount_tier="medium", bank_state="Karnataka")
        )

    def _route(self, outcome: str, amount: float = 2000, **request) -> dict:
        payload = {"amount": amount}
        payload.update(request)
        selection = self.engine.select_endpoint(payload)
        if outcome:
            self.engine.report_outcome(selection["endpointId"], outcome, selection["reservationId"])
        self.clock.advance(seconds=30)
        return selection

    def test_empty_realtime_stats(self) -> None:
        """No traffic yields zeros and an undefined success rate."""
        stats = self.engine.get_realtime_stats()
        self.assertEqual(stats["requests_1h"], 0)
        self.assertIsNone(stats["success_rate_1h"])
        self.assertEqual(stats["volume_1h"], 0.0)
        self.assertEqual(stats["topBanks"], [])

    def test_realtime_stats_cover_last_hour(self) -> None:
        """Requests, success rate and completed volume over the trailing hour."""
        self._route("completed", 2000, userCity="Pune")
        self._route("completed", 3000, userCity="Pune")
        self._route("failed", 1500, userCity="Pune")
        self._route("", 1200, userCity="Pune")

        stats = self.engine.get_realtime_stats()
        self.assertEqual(stats["requests_1h"], 4)
        self.assertEqual(stats["success_rate_1h"], 66.67)
        self.assertEqual(stats["volume_1h"], 5000.0)
        self.assertEqual(stats["failed_1h"], 1)
        self.assertEqual(stats["topBanks"][0]["bank"], "HDFC Bank")
        self.assertEqual(stats["topBanks"][0]["requests"], 4)
        self.assertEqual(stats["topBanks"][0]["successRate"], 66.67)

    def test_old_activity_drops_out_of_realtime_window(self) -> None:
        """Activity older than an hour is not counted."""
        self._route("completed", 2000)
        self.clock.advance(minutes=61)
        stats = self.engine.get_realtime_stats()
        self.assertEqual(stats["requests_1h"], 0)
        self.assertIsNone(stats["success_rate_1h"])

    def test_top_banks_order_by_requests(self) -> None:
        """Banks are ranked by request count."""
        self._route("completed", 2000, userCity="Pune")
        self.engine.set_endpoint_active("hdfc_1", False)
        self._route("completed", 2000)
        self._route("failed", 2000)

        banks = self.engine.get_realtime_stats()["topBanks"]
        self.assertEqual([row["bank"] for row in banks], ["SBI", "HDFC Bank"])
        self.assertEqual(banks[0]["successRate"], 50.0)
        self.assertEqual(banks[0]["volume"], 2000.0)

    def test_match_breakdown(self) -> None:
        """Tier and geo match shares with the average geo boost."""
        self._route("completed", 2000, userCity="Pune")
        self._route("completed", 2000, userCity="Mumbai", userState="Maharashtra")
        self.engine.set_endpoint_active("hdfc_1", False)
        self._route("completed", 2000, userState="Karnataka")
        self._route("completed", 2000)

        breakdown = self.engine.get_match_breakdown()
        self.assertEqual(breakdown["total"], 4)
        self.assertEqual(breakdown["tierMatch"]["exact"], {"count": 2, "share": 50.0})
        self.assertEqual(breakdown["tierMatch"]["adjacent"], {"count": 2, "share": 50.0})
        self.assertEqual(breakdown["geoMatch"]["city"]["count"], 1)
        self.assertEqual(breakdown["geoMatch"]["state"]["count"], 2)
        self.assertEqual(breakdown["geoMatch"]["none"]["count"], 1)
        self.assertEqual(breakdown["averageGeoBoost"], 7.75)
        self.assertEqual(breakdown["averageGeoBoostWhenMatched"], 10.33)

    def test_match_breakdown_includes_the_current_instant(self) -> None:
        """A selection made at the query instant counts in the default window."""
        self.engine.select_endpoint({"amount": 2000, "userCity": "Pune"})

        breakdown = self.engine.get_match_breakdown()

        self.assertEqual(breakdown["total"], 1)
        self.assertEqual(breakdown["end"], self.clock.now.isoformat())
        self.assertEqual(breakdown["geoMatch"]["city"]["count"], 1)

    def test_naive_bounds_are_read_as_utc(self) -> None:
        """Timezone-less query bounds compare against UTC log timestamps."""
        self._route("completed", 2000, userCity="Pune")
        naive_start = self.clock.now.replace(tzinfo=None) - timedelta(hours=1)
        naive_end = self.clock.now.replace(tzinfo=None)

        self.assertEqual(len(self.engine.query_selection_logs(start=naive_start, end=naive_end)), 1)
        self.assertEqual(self.engine.query_selection_logs(start=naive_end), [])
        self.assertEqual(self.engine.get_match_breakdown(start=naive_start, end=naive_end)["total"], 1)

    def test_query_logs_filters(self) -> None:
        """Logs filter by bank and match kind, newest first."""
        self._route("completed", 2000, userCity="Pune")
        self.engine.set_endpoint_active("hdfc_1", False)
        self._route("completed", 2000)

        self.assertEqual(len(self.engine.query_selection_logs()), 2)
        sbi_logs = self.engine.query_selection_logs(bank="sbi")
        self.assertEqual([log.endpoint_id for log in sbi_logs], ["sbi_1"])
        exact = self.engine.query_selection_logs(tier_match=TierMatch.EXACT)
        self.assertEqual([log.endpoint_id for log in exact], ["hdfc_1"])
        city = self.engine.query_selection_logs(geo_match=GeoMatch.CITY)
        self.assertEqual(len(city), 1)
        newest = self.engine.query_selection_logs(limit=1)
        self.assertEqual(newest[0].endpoint_id, "sbi_1")

    def test_low_success_rate_raises_alert_once_per_cooldown(self) -> None:
        """Anomaly detection alerts on a collapsed success rate, then stays quiet."""
        for index in range(10):
            self.engine.registry.register(
                make_endpoint("icici_{0}".format(index), bank_name="ICICI {0}".format(index), trader_id="t{0}".format(index))
            )
        for index in range(12):
            self._route("failed" if index < 8 else "completed", 2000)

        alert = self.engine.stats.detect_anomalies()
        self.assertIsNotNone(alert)
        self.assertEqual(alert.alert_type, AlertType.HIGH_FAILURE_RATE)
        self.assertEqual(alert.data["success_rate"], 33.33)

        self.clock.advance(minutes=10)
        self.assertIsNone(self.engine.stats.detect_anomalies())

        self.clock.advance(minutes=21)
        self._route("failed", 2000)
        self.assertIsNotNone(self.engine.stats.detect_anomalies())

    def test_too_few_outcomes_never_alert(self) -> None:
        """A handful of failures is not an anomaly."""
        self._route("failed", 2000)
        self._route("failed", 2000)
        self.assertIsNone(self.engine.stats.detect_anomalies())


if __name__ == "__main__":
    unittest.main()
