"""Firestore client manager exposing versioned document operations for the engine stores."""

from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore
from google.oauth2 import service_account


logger = logging.getLogger(__name__)

FilterTuple = Tuple[str, str, Any]


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


class FirebaseClientManager:
    """Encapsulates Firestore client setup and the document operations the repositories need."""

    def __init__(self, project_id: Optional[str] = None, credentials_path: Optional[str] = None) -> None:
        """Initialize Firestore client.

        Args:
            project_id: Optional Google Cloud project id override.
            credentials_path: Optional path to Firebase service account json file.
        """
        try:
            if credentials_path:
                credentials = service_account.Credentials.from_service_account_file(credentials_path)
                self._client = firestore.Client(project=project_id, credentials=credentials)
            else:
                self._client = firestore.Client(project=project_id) if project_id else firestore.Client()
            logger.info("FirebaseClientManager initialized for project_id=%s", project_id)
        except Exception:
            logger.exception("Failed to initialize Firebase Firestore client.")
            raise

    def create_document(self, collection_name: str, document_id: str, payload: Dict[str, Any]) -> bool:
        """Create a document only if it does not exist yet.

        Returns:
            bool: ``False`` when a document with the same id is already stored.
        """
        try:
            ref = self._client.collection(collection_name).document(document_id)
            safe_payload = dict(payload)
            safe_payload["created_at"] = safe_payload.get("created_at", _utc_now())
            safe_payload["updated_at"] = safe_payload.get("updated_at", _utc_now())
            ref.create(safe_payload)
            return True
        except gcp_exceptions.AlreadyExists:
            logger.info("Document already exists collection=%s document_id=%s", collection_name, document_id)
            return False
        except Exception:
            logger.exception(
                "Failed to create document collection=%s document_id=%s",
                collection_name,
                document_id,
            )
            raise

    def get_document(self, collection_name: str, document_id: str) -> Optional[Dict[str, Any]]:
        """Get one Firestore document by id."""
        try:
            snapshot = self._client.collection(collection_name).document(document_id).get()
            if not snapshot.exists:
                return None
            data = snapshot.to_dict() or {}
            data["id"] = snapshot.id
            return data
        except Exception:
            logger.exception(
                "Failed to get document collection=%s document_id=%s",
                collection_name,
                document_id,
            )
            raise

    def compare_and_set(
        self,
        collection_name: str,
        document_id: str,
        expected_version: int,
        payload: Dict[str, Any],
    ) -> bool:
        """Replace a document inside a transaction if its stored version still matches.

        Args:
            collection_name: Target collection.
            document_id: Firestore document id.
            expected_version: Version the caller read before mutating.
            payload: Full replacement payload, already carrying the bumped version.

        Returns:
            bool: ``True`` if the write committed, ``False`` on a version mismatch.
        """
        ref = self._client.collection(collection_name).document(document_id)
        safe_payload = dict(payload)
        safe_payload["updated_at"] = _utc_now()

        @firestore.transactional
        def _apply(transaction: firestore.Transaction) -> bool:
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                return False
            current_version = (snapshot.to_dict() or {}).get("version")
            if current_version != expected_version:
                return False
            transaction.set(ref, safe_payload)
            return True

        try:
            return _apply(self._client.transaction())
        except Exception:
            logger.exception(
                "Failed compare-and-set collection=%s document_id=%s expected_version=%s",
                collection_name,
                document_id,
                expected_version,
            )
            raise

    def query_documents(
        self,
        collection_name: str,
        filters: Optional[Sequence[FilterTuple]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Run a filtered query and return document payloads.

        Args:
            collection_name: Target collection.
            filters: Sequence of tuples `(field, op, value)`.
            order_by: Optional field name for sorting.
            limit: Optional maximum result count.
        """
        try:
            query = self._client.collection(collection_name)
            for field_name, operator, value in filters or []:
                query = query.where(filter=firestore.FieldFilter(field_name, operator, value))
            if order_by:
                query = query.order_by(order_by)
            if limit is not None:
                query = query.limit(limit)

            documents: List[Dict[str, Any]] = []
            for snapshot in query.stream():
                payload = snapshot.to_dict() or {}
                payload["id"] = snapshot.id
                documents.append(payload)
            return documents
        except Exception:
            logger.exception("Failed query for collection=%s", collection_name)
            raise
