"""Repository interfaces for datastore-agnostic engine state access.

Every shared mutable document is written through ``compare_and_set`` with the
version the caller read; a stale version makes the write fail instead of
overwriting a concurrent change.
"""

from abc import ABC, abstractmethod
from datetime import datetime
import logging
from typing import Generic, List, Optional, TypeVar

from .alerts import AlertModel
from .base import BaseDocumentModel
from .circuit_breakers import CircuitBreakerModel, CircuitTransitionModel
from .endpoints import EndpointModel
from .enums import AlertType
from .exceptions import ModelNotFoundError, VersionConflictError
from .reservations import ReservationModel
from .selection_logs import SelectionLogModel


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseDocumentModel)


class VersionedRepository(ABC, Generic[ModelT]):
    """Common contract for versioned documents."""

    @abstractmethod
    def create(self, model: ModelT) -> ModelT:
        """Persist a new model.

        Raises:
            VersionConflictError: If a document with the same id exists.
        """

    @abstractmethod
    def find(self, model_id: str) -> Optional[ModelT]:
        """Return model by identifier, or ``None``."""

    @abstractmethod
    def list_all(self) -> List[ModelT]:
        """Return every non-deleted model."""

    @abstractmethod
    def compare_and_set(self, model: ModelT, expected_version: int) -> bool:
        """Replace the stored model only if its version equals ``expected_version``."""

    def get_by_id(self, model_id: str) -> ModelT:
        """Fetch a model by identifier.

        Raises:
            ModelNotFoundError: If the document does not exist.
        """
        model = self.find(model_id)
        if model is None:
            raise ModelNotFoundError("{0} not found: {1}".format(self.__class__.__name__, model_id))
        return model


class AppendOnlyRepository(ABC, Generic[ModelT]):
    """Contract for immutable audit records."""

    @abstractmethod
    def append(self, model: ModelT) -> ModelT:
        """Persist a new immutable record."""

    @abstractmethod
    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ModelT]:
        """Return records with ``start <= created_at < end``, newest first."""


class EndpointRepository(VersionedRepository[EndpointModel]):
    """Endpoint pool data access abstraction."""


class CircuitBreakerRepository(VersionedRepository[CircuitBreakerModel]):
    """Bank breaker data access abstraction, keyed by normalized bank name."""


class ReservationRepository(VersionedRepository[ReservationModel]):
    """Reservation data access abstraction."""

    @abstractmethod
    def list_expired_holds(self, now: datetime) -> List[ReservationModel]:
        """Return HELD reservations whose ``expires_at`` has passed."""

    @abstractmethod
    def list_finalized_since(self, since: datetime) -> List[ReservationModel]:
        """Return reservations finalized at or after ``since``."""


class AlertRepository(VersionedRepository[AlertModel]):
    """Alert data access abstraction. Alerts only change on acknowledgment."""

    @abstractmethod
    def latest_of_type(self, alert_type: AlertType) -> Optional[AlertModel]:
        """Return the most recent alert of ``alert_type``."""


class SelectionLogRepository(AppendOnlyRepository[SelectionLogModel]):
    """Append-only selection log store."""


class TransitionRepository(AppendOnlyRepository[CircuitTransitionModel]):
    """Append-only breaker transition audit store."""


__all__ = [
    "ModelNotFoundError",
    "VersionConflictError",
    "VersionedRepository",
    "AppendOnlyRepository",
    "EndpointRepository",
    "CircuitBreakerRepository",
    "ReservationRepository",
    "AlertRepository",
    "SelectionLogRepository",
    "TransitionRepository",
]
