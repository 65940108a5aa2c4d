"""Build the repository set for the configured storage backend."""

from dataclasses import dataclass
import logging

from payin_engine.core.config import AppSettings
from payin_engine.models.repositories import (
    AlertRepository,
    CircuitBreakerRepository,
    EndpointRepository,
    ReservationRepository,
    SelectionLogRepository,
    TransitionRepository,
)

from .memory_repositories import (
    InMemoryAlertRepository,
    InMemoryCircuitBreakerRepository,
    InMemoryEndpointRepository,
    InMemoryReservationRepository,
    InMemorySelectionLogRepository,
    InMemoryTransitionRepository,
)


logger = logging.getLogger(__name__)


@dataclass
class RepositoryBundle:
    """All stores the engine reads and writes."""

    endpoints: EndpointRepository
    breakers: CircuitBreakerRepository
    reservations: ReservationRepository
    selection_logs: SelectionLogRepository
    alerts: AlertRepository
    transitions: TransitionRepository
    backend: str = "memory"


def build_memory_repositories() -> RepositoryBundle:
    """Return a fresh in-memory repository set."""
    return RepositoryBundle(
        endpoints=InMemoryEndpointRepository(),
        breakers=InMemoryCircuitBreakerRepository(),
        reservations=InMemoryReservationRepository(),
        selection_logs=InMemorySelectionLogRepository(),
        alerts=InMemoryAlertRepository(),
        transitions=InMemoryTransitionRepository(),
    )


def build_repositories(settings: AppSettings) -> RepositoryBundle:
    """Return Firestore repositories when Firebase is enabled, in-memory ones otherwise.

    Firestore initialization failures fall back to memory so the service still starts.
    """
    if not settings.firebase_enabled:
        logger.info("Firebase integration disabled by firebase.enabled=false. Using in-memory stores.")
        return build_memory_repositories()

    try:
        from payin_engine.core.firebase_client_manager import FirebaseClientManager

        from .firestore_repositories import (
            FirestoreAlertRepository,
            FirestoreCircuitBreakerRepository,
            FirestoreEndpointRepository,
            FirestoreReservationRepository,
            FirestoreSelectionLogRepository,
            FirestoreTransitionRepository,
        )

        firebase_manager = FirebaseClientManager(
            project_id=settings.firebase_project_id,
            credentials_path=settings.firebase_credentials_path,
        )
        collections = settings.collections
        return RepositoryBundle(
            endpoints=FirestoreEndpointRepository(firebase_manager, collections["endpoints"]),
            breakers=FirestoreCircuitBreakerRepository(firebase_manager, collections["circuit_breakers"]),
            reservations=FirestoreReservationRepository(firebase_manager, collections["reservations"]),
            selection_logs=FirestoreSelectionLogRepository(firebase_manager, collections["selection_logs"]),
            alerts=FirestoreAlertRepository(firebase_manager, collections["alerts"]),
            transitions=FirestoreTransitionRepository(firebase_manager, collections["transitions"]),
            backend="firestore",
        )
    except Exception:
        logger.exception("Failed to initialize Firestore repositories. Falling back to in-memory stores.")
        return build_memory_repositories()
