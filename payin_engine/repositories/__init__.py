"""Repository implementations for the engine stores."""

from .factory import RepositoryBundle, build_memory_repositories, build_repositories
from .memory_repositories import (
    InMemoryAlertRepository,
    InMemoryCircuitBreakerRepository,
    InMemoryEndpointRepository,
    InMemoryReservationRepository,
    InMemorySelectionLogRepository,
    InMemoryTransitionRepository,
)

__all__ = [
    "RepositoryBundle",
    "build_memory_repositories",
    "build_repositories",
    "InMemoryEndpointRepository",
    "InMemoryCircuitBreakerRepository",
    "InMemoryReservationRepository",
    "InMemoryAlertRepository",
    "InMemorySelectionLogRepository",
    "InMemoryTransitionRepository",
]
