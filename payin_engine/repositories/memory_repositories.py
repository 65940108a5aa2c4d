"""In-memory repository implementations with per-document compare-and-set."""

from collections import defaultdict
from datetime import datetime
import logging
from threading import Lock, RLock
from typing import Dict, Generic, List, Optional, TypeVar

from payin_engine.models.alerts import AlertModel
from payin_engine.models.base import BaseDocumentModel
from payin_engine.models.circuit_breakers import CircuitBreakerModel, CircuitTransitionModel
from payin_engine.models.endpoints import EndpointModel
from payin_engine.models.enums import AlertType
from payin_engine.models.exceptions import VersionConflictError
from payin_engine.models.repositories import (
    AlertRepository,
    CircuitBreakerRepository,
    EndpointRepository,
    ReservationRepository,
    SelectionLogRepository,
    TransitionRepository,
)
from payin_engine.models.reservations import ReservationModel
from payin_engine.models.selection_logs import SelectionLogModel


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseDocumentModel)


class _VersionedMemoryStore(Generic[ModelT]):
    """Dict-backed document store.

    Each document id has its own lock, held only for the compare-and-swap of that
    document, so writers touching different documents never wait on each other.
    Stored models are deep copies; callers never share a mutable snapshot with the store.
    """

    def __init__(self) -> None:
        self._documents: Dict[str, ModelT] = {}
        self._key_locks: Dict[str, Lock] = defaultdict(Lock)
        self._registry_lock = RLock()

    def _lock_for(self, document_id: str) -> Lock:
        with self._registry_lock:
            return self._key_locks[document_id]

    def create(self, model: ModelT) -> ModelT:
        document_id = model.document_id
        with self._lock_for(document_id):
            if document_id in self._documents:
                raise VersionConflictError("Document already exists: {0}".format(document_id))
            self._documents[document_id] = model.model_copy(deep=True)
        return model

    def find(self, model_id: str) -> Optional[ModelT]:
        with self._lock_for(model_id):
            stored = self._documents.get(model_id)
            if stored is None or stored.is_deleted:
                return None
            return stored.model_copy(deep=True)

    def list_all(self) -> List[ModelT]:
        with self._registry_lock:
            document_ids = list(self._documents.keys())
        models = [self.find(document_id) for document_id in document_ids]
        return [model for model in models if model is not None]

    def compare_and_set(self, model: ModelT, expected_version: int) -> bool:
        document_id = model.document_id
        with self._lock_for(document_id):
            stored = self._documents.get(document_id)
            if stored is None or stored.version != expected_version:
                return False
            self._documents[document_id] = model.model_copy(deep=True)
            return True


class _AppendOnlyMemoryStore(Generic[ModelT]):
    """Append-only list of immutable records."""

    def __init__(self) -> None:
        self._records: List[ModelT] = []
        self._lock = Lock()

    def append(self, model: ModelT) -> ModelT:
        with self._lock:
            self._records.append(model)
        return model

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ModelT]:
        with self._lock:
            records = list(self._records)
        selected = [
            record
            for record in records
            if (start is None or record.created_at >= start) and (end is None or record.created_at < end)
        ]
        selected.sort(key=lambda record: record.created_at, reverse=True)
        if limit is not None:
            selected = selected[: int(limit)]
        return selected


class InMemoryEndpointRepository(_VersionedMemoryStore[EndpointModel], EndpointRepository):
    """Endpoint pool held in process memory."""


class InMemoryCircuitBreakerRepository(_VersionedMemoryStore[CircuitBreakerModel], CircuitBreakerRepository):
    """Bank breakers held in process memory."""


class InMemoryReservationRepository(_VersionedMemoryStore[ReservationModel], ReservationRepository):
    """Reservations held in process memory."""

    def list_expired_holds(self, now: datetime) -> List[ReservationModel]:
        return [item for item in self.list_all() if item.is_held and item.expires_at <= now]

    def list_finalized_since(self, since: datetime) -> List[ReservationModel]:
        return [
            item
            for item in self.list_all()
            if item.finalized_at is not None and item.finalized_at >= since
        ]


class InMemoryAlertRepository(_VersionedMemoryStore[AlertModel], AlertRepository):
    """Alerts held in process memory."""

    def latest_of_type(self, alert_type: AlertType) -> Optional[AlertModel]:
        matches = [alert for alert in self.list_all() if alert.alert_type == alert_type]
        if not matches:
            return None
        return max(matches, key=lambda alert: alert.created_at)


class InMemorySelectionLogRepository(_AppendOnlyMemoryStore[SelectionLogModel], SelectionLogRepository):
    """Selection logs held in process memory."""


class InMemoryTransitionRepository(_AppendOnlyMemoryStore[CircuitTransitionModel], TransitionRepository):
    """Breaker transition audit held in process memory."""
