"""Firestore implementations of the engine repositories."""

from datetime import datetime
import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from pydantic import TypeAdapter, ValidationError

from payin_engine.core.firebase_client_manager import FirebaseClientManager
from payin_engine.models.alerts import AlertModel
from payin_engine.models.base import BaseDocumentModel
from payin_engine.models.circuit_breakers import CircuitBreakerModel, CircuitTransitionModel
from payin_engine.models.endpoints import EndpointModel
from payin_engine.models.enums import AlertType, ReservationStatus
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

_DATETIME_ADAPTER = TypeAdapter(datetime)


def _as_stored_datetime(value: datetime) -> Any:
    """Serialize a datetime the same way ``to_firestore`` stores model timestamps."""
    return _DATETIME_ADAPTER.dump_python(value, mode="json")


class _FirestoreVersionedRepository(Generic[ModelT]):
    """Versioned document access on one Firestore collection."""

    model_cls: Type[ModelT]

    def __init__(self, firebase_manager: FirebaseClientManager, collection_name: str) -> None:
        self._firebase_manager = firebase_manager
        self._collection_name = collection_name
        logger.info("Initialized %s collection=%s", self.__class__.__name__, collection_name)

    def _parse(self, payload: dict) -> ModelT:
        return self.model_cls.from_firestore(payload, doc_id=payload.get("id"))

    def create(self, model: ModelT) -> ModelT:
        try:
            created = self._firebase_manager.create_document(
                collection_name=self._collection_name,
                document_id=model.document_id,
                payload=model.to_firestore(),
            )
        except Exception:
            logger.exception("Failed to create %s id=%s", self.model_cls.__name__, model.id)
            raise
        if not created:
            raise VersionConflictError("Document already exists: {0}".format(model.id))
        return model

    def find(self, model_id: str) -> Optional[ModelT]:
        try:
            payload = self._firebase_manager.get_document(self._collection_name, model_id)
            if payload is None or payload.get("is_deleted"):
                return None
            return self._parse(payload)
        except ValidationError:
            logger.exception("Invalid %s payload in Firestore id=%s", self.model_cls.__name__, model_id)
            raise
        except Exception:
            logger.exception("Failed to get %s id=%s", self.model_cls.__name__, model_id)
            raise

    def _query(self, filters: Optional[list] = None, order_by: Optional[str] = None) -> List[ModelT]:
        try:
            payloads = self._firebase_manager.query_documents(
                collection_name=self._collection_name,
                filters=filters,
                order_by=order_by,
            )
            return [self._parse(payload) for payload in payloads]
        except Exception:
            logger.exception("Failed to query %s collection=%s", self.model_cls.__name__, self._collection_name)
            raise

    def list_all(self) -> List[ModelT]:
        return self._query(filters=[("is_deleted", "==", False)])

    def compare_and_set(self, model: ModelT, expected_version: int) -> bool:
        committed = self._firebase_manager.compare_and_set(
            collection_name=self._collection_name,
            document_id=model.document_id,
            expected_version=expected_version,
            payload=model.to_firestore(),
        )
        if not committed:
            logger.debug(
                "Compare-and-set lost collection=%s id=%s expected_version=%s",
                self._collection_name,
                model.id,
                expected_version,
            )
        return committed


class _FirestoreAppendOnlyRepository(Generic[ModelT]):
    """Append-only Firestore collection of immutable records."""

    model_cls: Type[ModelT]

    def __init__(self, firebase_manager: FirebaseClientManager, collection_name: str) -> None:
        self._firebase_manager = firebase_manager
        self._collection_name = collection_name

    def append(self, model: ModelT) -> ModelT:
        try:
            self._firebase_manager.create_document(
                collection_name=self._collection_name,
                document_id=model.document_id,
                payload=model.to_firestore(),
            )
            return model
        except Exception:
            logger.exception("Failed to append %s id=%s", self.model_cls.__name__, model.id)
            raise

    def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ModelT]:
        filters = []
        if start is not None:
            filters.append(("created_at", ">=", _as_stored_datetime(start)))
        if end is not None:
            filters.append(("created_at", "<", _as_stored_datetime(end)))
        try:
            payloads = self._firebase_manager.query_documents(
                collection_name=self._collection_name,
                filters=filters,
            )
        except Exception:
            logger.exception("Failed to query %s collection=%s", self.model_cls.__name__, self._collection_name)
            raise
        records = [self.model_cls.from_firestore(payload, doc_id=payload.get("id")) for payload in payloads]
        records.sort(key=lambda record: record.created_at, reverse=True)
        if limit is not None:
            records = records[: int(limit)]
        return records


class FirestoreEndpointRepository(_FirestoreVersionedRepository[EndpointModel], EndpointRepository):
    model_cls = EndpointModel


class FirestoreCircuitBreakerRepository(
    _FirestoreVersionedRepository[CircuitBreakerModel], CircuitBreakerRepository
):
    model_cls = CircuitBreakerModel


class FirestoreReservationRepository(_FirestoreVersionedRepository[ReservationModel], ReservationRepository):
    model_cls = ReservationModel

    def list_expired_holds(self, now: datetime) -> List[ReservationModel]:
        held = self._query(filters=[("status", "==", ReservationStatus.HELD.value)])
        return [item for item in held if item.expires_at <= now]

    def list_finalized_since(self, since: datetime) -> List[ReservationModel]:
        return self._query(filters=[("finalized_at", ">=", _as_stored_datetime(since))])


class FirestoreAlertRepository(_FirestoreVersionedRepository[AlertModel], AlertRepository):
    model_cls = AlertModel

    def latest_of_type(self, alert_type: AlertType) -> Optional[AlertModel]:
        matches = self._query(filters=[("alert_type", "==", alert_type.value)])
        if not matches:
            return None
        return max(matches, key=lambda alert: alert.created_at)


class FirestoreSelectionLogRepository(
    _FirestoreAppendOnlyRepository[SelectionLogModel], SelectionLogRepository
):
    model_cls = SelectionLogModel


class FirestoreTransitionRepository(
    _FirestoreAppendOnlyRepository[CircuitTransitionModel], TransitionRepository
):
    model_cls = CircuitTransitionModel
