"""Append-only engine alerts with compare-and-set acknowledgment."""

from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from payin_engine.models.alerts import AlertModel
from payin_engine.models.base import utc_now
from payin_engine.models.enums import AlertSeverity, AlertType
from payin_engine.models.exceptions import VersionConflictError
from payin_engine.models.repositories import AlertRepository

from .event_bus import ALERT_ACKNOWLEDGED, ALERT_RAISED, EngineEventBus


logger = logging.getLogger(__name__)

_MAX_ACK_ATTEMPTS = 5


class AlertService:
    """Raise, list and acknowledge engine alerts."""

    def __init__(
        self,
        repository: AlertRepository,
        event_bus: EngineEventBus,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._event_bus = event_bus
        self._clock = clock

    def raise_alert(
        self,
        alert_type: AlertType,
        title: str,
        severity: AlertSeverity = AlertSeverity.WARNING,
        message: Optional[str] = None,
        bank_name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> AlertModel:
        now = self._clock()
        alert = AlertModel(
            id="alt_{0}".format(uuid4().hex[:16]),
            alert_type=alert_type,
            severity=severity,
            bank_name=bank_name,
            title=title,
            message=message,
            data=data or {},
            created_at=now,
            updated_at=now,
        )
        try:
            self._repository.create(alert)
        except Exception:
            logger.exception("Failed to persist alert type=%s bank=%s", alert_type.value, bank_name)
            raise
        logger.warning("Alert raised type=%s severity=%s bank=%s title=%s", alert_type.value, severity.value, bank_name, title)
        self._event_bus.publish(ALERT_RAISED, alert.to_firestore())
        return alert

    def latest_of_type(self, alert_type: AlertType) -> Optional[AlertModel]:
        return self._repository.latest_of_type(alert_type)

    def list_alerts(self, unacknowledged_only: bool = False, limit: Optional[int] = None) -> List[AlertModel]:
        alerts = self._repository.list_all()
        if unacknowledged_only:
            alerts = [alert for alert in alerts if not alert.acknowledged]
        alerts.sort(key=lambda alert: alert.created_at, reverse=True)
        if limit is not None:
            alerts = alerts[: int(limit)]
        return alerts

    def acknowledge(self, alert_id: str, admin_id: str) -> AlertModel:
        """Mark an alert acknowledged. Acknowledging twice keeps the first acknowledgment.

        Raises:
            ModelNotFoundError: If the alert does not exist.
            VersionConflictError: If concurrent writers keep winning.
        """
        for _ in range(_MAX_ACK_ATTEMPTS):
            current = self._repository.get_by_id(alert_id)
            if current.acknowledged:
                return current
            updated = current.next_version(
                acknowledged=True,
                acknowledged_by=admin_id,
                acknowledged_at=self._clock(),
            )
            if self._repository.compare_and_set(updated, current.version):
                logger.info("Alert acknowledged alert_id=%s admin=%s", alert_id, admin_id)
                self._event_bus.publish(ALERT_ACKNOWLEDGED, {"alert_id": alert_id, "acknowledged_by": admin_id})
                return updated
        raise VersionConflictError("Could not acknowledge alert_id={0}".format(alert_id))
