"""Unit tests for the endpoint registry and its reservations."""

from concurrent.futures import ThreadPoolExecutor
import unittest

from payin_engine.core.config import SelectionSettings
from payin_engine.models.enums import AmountTier, PayinOutcome, ReservationStatus
from payin_engine.models.exceptions import EndpointBusyError, ModelNotFoundError, VersionConflictError
from payin_engine.repositories.factory import build_memory_repositories
from payin_engine.services.endpoint_registry import EndpointRegistry
from payin_engine.services.event_bus import ENDPOINT_UPDATED, EngineEventBus
from payin_engine.tests.helpers import FakeClock, make_endpoint


class EndpointRegistryTests(unittest.TestCase):
    """Pool management and atomic reservation."""

    def setUp(self) -> None:
        self.clock = FakeClock()
        self.repos = build_memory_repositories()
        self.bus = EngineEventBus()
        self.registry = EndpointRegistry(
            self.repos.endpoints,
            self.repos.reservations,
            SelectionSettings(),
            self.bus,
            self.clock,
        )

    def test_register_assigns_missing_id(self) -> None:
        """Endpoints without an id get one."""
        endpoint = make_endpoint("ep_1").model_copy(update={"id": None})
        created = self.registry.register(endpoint)
        self.assertTrue(created.id.startswith("upi_"))
        self.assertEqual(self.registry.get(created.id).upi_id, "ep_1@upi")

    def test_register_duplicate_id_conflicts(self) -> None:
        """An id can only be registered once."""
        self.registry.register(make_endpoint("ep_1"))
        with self.assertRaises(VersionConflictError):
            self.registry.register(make_endpoint("ep_1"))

    def test_get_unknown_endpoint_raises(self) -> None:
        """Unknown ids raise ModelNotFoundError."""
        with self.assertRaises(ModelNotFoundError):
            self.registry.get("missing")

    def test_reserve_commits_volume_and_locks(self) -> None:
        """A reservation adds to daily totals and holds the endpoint."""
        self.registry.register(make_endpoint("ep_1"))
        reservation = self.registry.reserve("ep_1", 2500.0)

        self.assertIsNotNone(reservation)
        self.assertEqual(reservation.status, ReservationStatus.HELD)
        endpoint = self.registry.get("ep_1")
        self.assertEqual(endpoint.daily_volume, 2500.0)
        self.assertEqual(endpoint.daily_count, 1)
        self.assertEqual(endpoint.locked_by, reservation.id)
        self.assertEqual(endpoint.last_used_at, self.clock.now)
        self.assertEqual(endpoint.version, 2)

    def test_locked_endpoint_cannot_be_reserved_again(self) -> None:
        """Only one live reservation per endpoint."""
        self.registry.register(make_endpoint("ep_1"))
        self.assertIsNotNone(self.registry.reserve("ep_1", 2000.0))
        self.assertIsNone(self.registry.reserve("ep_1", 2000.0))
        self.assertEqual(self.registry.eligible_endpoints(2000.0), [])

    def test_expired_lock_no_longer_blocks(self) -> None:
        """A hold past its expiry stops excluding the endpoint."""
        self.registry.register(make_endpoint("ep_1"))
        self.registry.reserve("ep_1", 2000.0)
        self.clock.advance(minutes=31)
        self.assertEqual([endpoint.id for endpoint in self.registry.eligible_endpoints(2000.0)], ["ep_1"])

    def test_endpoint_near_daily_limit_is_excluded(self) -> None:
        """49,900 of 50,000 used leaves no room for 200."""
        self.registry.register(
            make_endpoint("ep_1", amount_tier=AmountTier.MICRO, daily_limit=50000, per_txn_limit=50000, daily_volume=49900)
        )
        self.assertEqual(self.registry.eligible_endpoints(200.0), [])
        self.assertEqual(len(self.registry.eligible_endpoints(100.0)), 1)
        self.assertIsNone(self.registry.reserve("ep_1", 200.0))

    def test_per_transaction_limit_is_enforced(self) -> None:
        """Amounts above the per-transaction limit are excluded."""
        self.registry.register(make_endpoint("ep_1", per_txn_limit=2000))
        self.assertEqual(self.registry.eligible_endpoints(2500.0), [])

    def test_completed_outcome_keeps_volume_and_unlocks(self) -> None:
        """Completed payins consume the reserved volume."""
        self.registry.register(make_endpoint("ep_1"))
        reservation = self.registry.reserve("ep_1", 2500.0)
        finalized = self.registry.finalize_reservation(reservation, PayinOutcome.COMPLETED)
        endpoint = self.registry.apply_outcome(finalized, PayinOutcome.COMPLETED, counts_as_failure=False)

        self.assertIsNone(endpoint.locked_by)
        self.assertEqual(endpoint.daily_volume, 2500.0)
        self.assertEqual(endpoint.total_completed, 1)
        self.assertEqual(endpoint.consecutive_successes, 1)
        self.assertEqual(endpoint.success_rate, 100.0)

    def test_failed_outcome_releases_volume(self) -> None:
        """Failed payins give the volume back and lower the success rate."""
        self.registry.register(make_endpoint("ep_1"))
        reservation = self.registry.reserve("ep_1", 2500.0)
        finalized = self.registry.finalize_reservation(reservation, PayinOutcome.FAILED)
        endpoint = self.registry.apply_outcome(finalized, PayinOutcome.FAILED, counts_as_failure=True)

        self.assertIsNone(endpoint.locked_by)
        self.assertEqual(endpoint.daily_volume, 0.0)
        self.assertEqual(endpoint.daily_count, 0)
        self.assertEqual(endpoint.success_rate, 0.0)
        self.assertEqual(endpoint.consecutive_failures, 1)

    def test_finalize_only_once(self) -> None:
        """A second finalization is refused."""
        self.registry.register(make_endpoint("ep_1"))
        reservation = self.registry.reserve("ep_1", 2500.0)
        self.assertIsNotNone(self.registry.finalize_reservation(reservation, PayinOutcome.COMPLETED))
        self.assertIsNone(self.registry.finalize_reservation(reservation, PayinOutcome.FAILED))

    def test_success_rate_uses_recent_sample_window(self) -> None:
        """Only the most recent outcomes count toward the success rate."""
        registry = EndpointRegistry(
            self.repos.endpoints,
            self.repos.reservations,
            SelectionSettings(success_rate_sample_size=4),
            self.bus,
            self.clock,
        )
        registry.register(make_endpoint("ep_1"))
        for outcome in (PayinOutcome.FAILED, PayinOutcome.FAILED, PayinOutcome.COMPLETED, PayinOutcome.COMPLETED,
                        PayinOutcome.COMPLETED, PayinOutcome.COMPLETED):
            reservation = registry.reserve("ep_1", 1000.0)
            finalized = registry.finalize_reservation(reservation, outcome)
            registry.apply_outcome(finalized, outcome, counts_as_failure=outcome == PayinOutcome.FAILED)
        endpoint = registry.get("ep_1")
        self.assertEqual(endpoint.recent_outcomes, [True, True, True, True])
        self.assertEqual(endpoint.success_rate, 100.0)
        self.assertEqual(endpoint.total_failed, 2)

    def test_deactivation_refused_while_reserved(self) -> None:
        """Pool toggles cannot race a live reservation."""
        self.registry.register(make_endpoint("ep_1"))
        reservation = self.registry.reserve("ep_1", 2000.0)
        with self.assertRaises(EndpointBusyError):
            self.registry.set_active("ep_1", False)

        self.registry.abort_reservation(reservation)
        endpoint = self.registry.set_active("ep_1", False)
        self.assertFalse(endpoint.active)
        self.assertEqual(endpoint.daily_volume, 0.0)
        self.assertEqual(self.registry.eligible_endpoints(2000.0), [])

    def test_update_limits_clips_per_transaction_limit(self) -> None:
        """Lowering the daily limit below the per-transaction limit clips it."""
        self.registry.register(make_endpoint("ep_1", daily_limit=50000, per_txn_limit=20000))
        endpoint = self.registry.update_limits("ep_1", amount_tier=AmountTier.MEDIUM, daily_limit=10000)
        self.assertEqual(endpoint.amount_tier, AmountTier.MEDIUM)
        self.assertEqual(endpoint.daily_limit, 10000)
        self.assertEqual(endpoint.per_txn_limit, 10000)

    def test_reset_daily_counters_keeps_live_hold(self) -> None:
        """Day rollover zeroes totals except the amount still held."""
        self.registry.register(make_endpoint("ep_1", daily_volume=30000, daily_count=12))
        self.registry.register(make_endpoint("ep_2", daily_volume=5000, daily_count=3))
        self.registry.reserve("ep_2", 1500.0)

        self.assertEqual(self.registry.reset_daily_counters(), 2)
        self.assertEqual(self.registry.get("ep_1").daily_volume, 0.0)
        self.assertEqual(self.registry.get("ep_1").daily_count, 0)
        self.assertEqual(self.registry.get("ep_2").daily_volume, 1500.0)
        self.assertEqual(self.registry.get("ep_2").daily_count, 1)

    def test_reset_daily_counters_carries_lapsed_hold(self) -> None:
        """A hold past its lock but not yet swept stays counted until it is released."""
        self.registry.register(make_endpoint("ep_1", daily_volume=5000, daily_count=4))
        stale = self.registry.reserve("ep_1", 1500.0)
        self.clock.advance(minutes=31)

        self.registry.reset_daily_counters()
        self.assertEqual(self.registry.get("ep_1").daily_volume, 1500.0)

        fresh = self.registry.reserve("ep_1", 700.0)
        self.assertIsNotNone(fresh)
        self.assertEqual(self.registry.get("ep_1").daily_volume, 2200.0)

        self.assertEqual([hold.id for hold in self.registry.expired_holds()], [stale.id])
        finalized = self.registry.finalize_reservation(stale, PayinOutcome.EXPIRED)
        self.registry.apply_outcome(finalized, PayinOutcome.EXPIRED, counts_as_failure=False)

        endpoint = self.registry.get("ep_1")
        self.assertEqual(endpoint.daily_volume, 700.0)
        self.assertEqual(endpoint.daily_count, 1)
        self.assertEqual(endpoint.locked_by, fresh.id)

    def test_active_counts_by_bank(self) -> None:
        """Active endpoints are counted per normalized bank."""
        self.registry.register(make_endpoint("ep_1", bank_name="HDFC Bank"))
        self.registry.register(make_endpoint("ep_2", bank_name="hdfc bank"))
        self.registry.register(make_endpoint("ep_3", bank_name="SBI", active=False))
        counts = self.registry.active_counts_by_bank()
        self.assertEqual(counts["hdfc bank"][1], 2)
        self.assertEqual(counts["sbi"], ("SBI", 0))

    def test_updates_are_published(self) -> None:
        """Administrative changes reach subscribers."""
        subscription = self.bus.subscribe([ENDPOINT_UPDATED])
        self.registry.register(make_endpoint("ep_1"))
        self.registry.set_active("ep_1", False)
        actions = [event.payload["action"] for event in subscription.drain()]
        self.assertEqual(actions, ["registered", "deactivated"])

    def test_concurrent_reservations_never_overcommit(self) -> None:
        """Parallel reserve and complete cycles respect the daily limit."""
        self.registry.register(make_endpoint("ep_1", daily_limit=10000, per_txn_limit=10000))

        def _worker() -> int:
            won = 0
            while self.registry.get("ep_1").has_capacity_for(1000.0):
                reservation = self.registry.reserve("ep_1", 1000.0)
                if reservation is None:
                    continue
                finalized = self.registry.finalize_reservation(reservation, PayinOutcome.COMPLETED)
                self.registry.apply_outcome(finalized, PayinOutcome.COMPLETED, counts_as_failure=False)
                won += 1
            return won

        with ThreadPoolExecutor(max_workers=8) as pool:
            wins = sum(pool.map(lambda _: _worker(), range(8)))

        endpoint = self.registry.get("ep_1")
        self.assertLessEqual(endpoint.daily_volume, 10000.0)
        self.assertEqual(endpoint.daily_volume, wins * 1000.0)
        self.assertEqual(endpoint.daily_count, wins)
        self.assertEqual(wins, 10)


if __name__ == "__main__":
    unittest.main()
