"""HTTP contract tests for the payin routing routes."""

import dataclasses
from pathlib import Path
import tempfile
import unittest

from fastapi.testclient import TestClient

from payin_engine.core.config import load_settings
from payin_engine.main import create_app
from payin_engine.models.enums import AlertType
from payin_engine.repositories.factory import build_memory_repositories
from payin_engine.repositories.memory_repositories import InMemoryCircuitBreakerRepository
from payin_engine.tests.helpers import FakeClock, build_test_engine, make_endpoint


class _ContendedBreakerRepository(InMemoryCircuitBreakerRepository):
    """Loses every compare-and-set once ``contended`` is switched on."""

    contended = False

    def compare_and_set(self, model, expected_version):
        if self.contended:
            return False
        return super().compare_and_set(model, expected_version)


class PayinApiTests(unittest.TestCase):
    """Request/response shapes and error mapping."""

    def setUp(self) -> None:
        settings = load_settings(Path(tempfile.gettempdir()) / "payin-engine-missing.yml")
        self.settings = dataclasses.replace(settings, ticker_enabled=False, ifsc_lookup_enabled=False)
        self.clock = FakeClock()
        self.engine = build_test_engine(clock=self.clock)
        self.engine.registry.register(make_endpoint("ep_a", bank_city="Mumbai", bank_state="Maharashtra"))
        self.engine.registry.register(make_endpoint("ep_b", bank_name="SBI", amount_tier="medium", trader_id="t2"))
        self.client = TestClient(create_app(self.settings, self.engine))

    def test_health(self) -> None:
        """Health reports the storage backend."""
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "backend": "memory"})

    def test_select_then_report_outcome(self) -> None:
        """A selection can be completed through the outcome route."""
        response = self.client.post("/payins/select", json={"amount": 3000, "userCity": "Mumbai"})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["endpointId"], "ep_a")
        self.assertEqual(body["tierMatch"], "exact")
        self.assertEqual(body["geoMatch"], "city")
        self.assertEqual(body["fallbackChain"], ["ep_b"])

        outcome = self.client.post(
            "/payins/outcome",
            json={"endpointId": "ep_a", "outcome": "completed", "reservationId": body["reservationId"]},
        )
        self.assertEqual(outcome.status_code, 200)
        self.assertTrue(outcome.json()["applied"])

        again = self.client.post("/payins/outcome", json={"endpointId": "ep_a", "outcome": "completed"})
        self.assertEqual(again.status_code, 200)
        self.assertFalse(again.json()["applied"])

    def test_invalid_requests_return_400(self) -> None:
        """Malformed payloads map to INVALID_REQUEST."""
        for payload in ({"amount": -1}, {"amount": 500000}, {"userCity": "Pune"}):
            response = self.client.post("/payins/select", json=payload)
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["detail"]["code"], "INVALID_REQUEST")
            self.assertFalse(response.json()["detail"]["retryable"])

        response = self.client.post("/payins/outcome", json={"endpointId": "ep_a", "outcome": "pending"})
        self.assertEqual(response.status_code, 400)

    def test_no_eligible_endpoint_returns_503(self) -> None:
        """An empty pool for the amount is retryable unavailability."""
        response = self.client.post("/payins/select", json={"amount": 60000})
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["detail"]["code"], "NO_ELIGIBLE_ENDPOINT")
        self.assertTrue(response.json()["detail"]["retryable"])

    def test_unknown_endpoint_returns_404(self) -> None:
        """Outcome reports for missing endpoints are not found."""
        response = self.client.post("/payins/outcome", json={"endpointId": "ep_x", "outcome": "failed"})
        self.assertEqual(response.status_code, 404)

    def test_circuit_status_and_reset(self) -> None:
        """Circuits list every bank and can be reset by an admin."""
        for index in range(5):
            self.engine.monitor.record_outcome("HDFC Bank", "f{0}".format(index), success=False)

        circuits = self.client.get("/admin/circuits").json()["circuits"]
        by_bank = {row["bank"]: row for row in circuits}
        self.assertEqual(by_bank["HDFC Bank"]["state"], "OPEN")
        self.assertEqual(by_bank["HDFC Bank"]["activeEndpoints"], 1)
        self.assertEqual(by_bank["SBI"]["state"], "CLOSED")

        self.clock.advance(minutes=1)
        reset = self.client.post("/admin/circuits/hdfc bank/reset", json={"actor": "ops_1"})
        self.assertEqual(reset.status_code, 200)
        self.assertEqual(reset.json()["previousState"], "OPEN")
        self.assertEqual(reset.json()["state"], "CLOSED")
        self.assertEqual(self.engine.monitor.transition_history("HDFC Bank")[0].actor, "ops_1")

        missing = self.client.post("/admin/circuits/Axis Bank/reset")
        self.assertEqual(missing.status_code, 404)

    def test_reset_that_keeps_losing_races_conflicts(self) -> None:
        """A reset whose retries are exhausted is a conflict, not a missing bank."""
        repositories = build_memory_repositories()
        breakers = _ContendedBreakerRepository()
        repositories.breakers = breakers
        engine = build_test_engine(clock=self.clock, repositories=repositories)
        engine.monitor.record_outcome("HDFC Bank", "s1", success=True)
        client = TestClient(create_app(self.settings, engine))

        breakers.contended = True
        response = client.post("/admin/circuits/HDFC Bank/reset", json={"actor": "ops_1"})
        self.assertEqual(response.status_code, 409)

        missing = client.post("/admin/circuits/Axis Bank/reset")
        self.assertEqual(missing.status_code, 404)

    def test_alerts_listing_and_acknowledgement(self) -> None:
        """Open-circuit alerts can be listed and acknowledged."""
        for index in range(5):
            self.engine.monitor.record_outcome("HDFC Bank", "f{0}".format(index), success=False)

        listing = self.client.get("/admin/alerts", params={"unacknowledged_only": True}).json()
        self.assertEqual(listing["count"], 1)
        alert = listing["alerts"][0]
        self.assertEqual(alert["alert_type"], AlertType.CIRCUIT_OPEN.value)

        ack = self.client.post("/admin/alerts/{0}/ack".format(alert["id"]), json={"adminId": "ops_1"})
        self.assertEqual(ack.status_code, 200)
        self.assertEqual(ack.json()["acknowledged_by"], "ops_1")
        self.assertEqual(self.client.get("/admin/alerts", params={"unacknowledged_only": True}).json()["count"], 0)

        missing = self.client.post("/admin/alerts/alt_missing/ack", json={"adminId": "ops_1"})
        self.assertEqual(missing.status_code, 404)

    def test_stats_and_logs(self) -> None:
        """Realtime stats, match breakdown and logs reflect routed traffic."""
        selection = self.client.post("/payins/select", json={"amount": 3000, "userCity": "Mumbai"}).json()
        self.client.post(
            "/payins/outcome",
            json={"endpointId": selection["endpointId"], "outcome": "completed", "reservationId": selection["reservationId"]},
        )

        stats = self.client.get("/admin/stats/realtime").json()
        self.assertEqual(stats["requests_1h"], 1)
        self.assertEqual(stats["success_rate_1h"], 100.0)
        self.assertEqual(stats["volume_1h"], 3000.0)

        matches = self.client.get("/admin/stats/matches").json()
        self.assertEqual(matches["total"], 1)
        self.assertEqual(matches["geoMatch"]["city"]["count"], 1)

        logs = self.client.get("/admin/selection-logs", params={"bank": "HDFC Bank", "tier_match": "exact"}).json()
        self.assertEqual(logs["count"], 1)
        self.assertEqual(logs["logs"][0]["endpoint_id"], "ep_a")

    def test_time_filters_without_timezone(self) -> None:
        """Naive start and end query parameters are read as UTC."""
        self.client.post("/payins/select", json={"amount": 3000, "userCity": "Mumbai"})

        logs = self.client.get("/admin/selection-logs", params={"start": "2026-01-15T00:00:00"})
        self.assertEqual(logs.status_code, 200)
        self.assertEqual(logs.json()["count"], 1)

        later = self.client.get("/admin/selection-logs", params={"start": "2026-01-15T07:00:00"})
        self.assertEqual(later.status_code, 200)
        self.assertEqual(later.json()["count"], 0)

        matches = self.client.get(
            "/admin/stats/matches",
            params={"start": "2026-01-15T00:00:00", "end": "2026-01-16T00:00:00"},
        )
        self.assertEqual(matches.status_code, 200)
        self.assertEqual(matches.json()["total"], 1)

    def test_endpoint_administration(self) -> None:
        """Endpoints can be registered, edited and toggled."""
        created = self.client.post(
            "/admin/endpoints",
            json={"upi_id": "new@okaxis", "trader_id": "t3", "bank_name": "Axis Bank", "amount_tier": "large"},
        )
        self.assertEqual(created.status_code, 201)
        endpoint_id = created.json()["id"]

        limits = self.client.patch(
            "/admin/endpoints/{0}/limits".format(endpoint_id),
            json={"amountTier": "xlarge", "dailyLimit": 40000},
        )
        self.assertEqual(limits.status_code, 200)
        self.assertEqual(limits.json()["amount_tier"], "xlarge")
        self.assertEqual(limits.json()["per_txn_limit"], 40000.0)

        toggled = self.client.post("/admin/endpoints/{0}/active/false".format(endpoint_id))
        self.assertEqual(toggled.status_code, 200)
        self.assertFalse(toggled.json()["active"])

        active = self.client.get("/admin/endpoints", params={"active_only": True}).json()
        self.assertEqual(sorted(item["id"] for item in active["endpoints"]), ["ep_a", "ep_b"])

        invalid = self.client.post("/admin/endpoints", json={"upi_id": "x"})
        self.assertEqual(invalid.status_code, 400)
        duplicate = self.client.post(
            "/admin/endpoints",
            json={"id": "ep_a", "upi_id": "dup@upi", "trader_id": "t9", "bank_name": "HDFC Bank"},
        )
        self.assertEqual(duplicate.status_code, 409)

    def test_deactivating_reserved_endpoint_conflicts(self) -> None:
        """An endpoint held by a live reservation cannot be toggled."""
        self.client.post("/payins/select", json={"amount": 3000, "userCity": "Mumbai"})
        response = self.client.post("/admin/endpoints/ep_a/active/false")
        self.assertEqual(response.status_code, 409)

    def test_geo_refresh_requires_enabled_lookup(self) -> None:
        """Geo refresh is rejected when lookups are off or the endpoint has no IFSC."""
        response = self.client.post("/admin/endpoints/ep_a/geo/refresh")
        self.assertEqual(response.status_code, 400)
        missing = self.client.post("/admin/endpoints/ep_missing/geo/refresh")
        self.assertEqual(missing.status_code, 404)


if __name__ == "__main__":
    unittest.main()
