"""Shared fixtures for engine unit tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from payin_engine.core.config import EngineSettings
from payin_engine.models.endpoints import EndpointModel
from payin_engine.models.enums import AmountTier
from payin_engine.repositories.factory import RepositoryBundle, build_memory_repositories
from payin_engine.services.payin_engine_service import PayinEngineService


START = datetime(2026, 1, 15, 6, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


def make_endpoint(endpoint_id: str, **overrides: Any) -> EndpointModel:
    """Build an active endpoint with sensible defaults."""
    data = {
        "id": endpoint_id,
        "upi_id": "{0}@upi".format(endpoint_id),
        "trader_id": "trader_{0}".format(endpoint_id),
        "holder_name": "Holder {0}".format(endpoint_id),
        "bank_name": "HDFC Bank",
        "bank_city": None,
        "bank_state": None,
        "amount_tier": AmountTier.SMALL,
        "daily_limit": 100000.0,
        "per_txn_limit": 100000.0,
    }
    data.update(overrides)
    return EndpointModel(**data)


def build_test_engine(
    clock: Optional[FakeClock] = None,
    settings: Optional[EngineSettings] = None,
    repositories: Optional[RepositoryBundle] = None,
) -> PayinEngineService:
    """Engine over fresh in-memory stores and a fake clock."""
    return PayinEngineService(
        settings or EngineSettings(),
        repositories or build_memory_repositories(),
        clock=clock or FakeClock(),
    )
