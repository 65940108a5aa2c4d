"""Engine alert model."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import Field, model_validator

from .base import BaseDocumentModel
from .enums import AlertSeverity, AlertType


class AlertModel(BaseDocumentModel):
    """Raised when a bank circuit opens or an anomaly is detected."""

    alert_type: AlertType
    severity: AlertSeverity = Field(default=AlertSeverity.WARNING)
    bank_name: Optional[str] = Field(default=None)
    title: str = Field(..., min_length=3)
    message: Optional[str] = Field(default=None)
    data: Dict[str, Any] = Field(default_factory=dict)

    acknowledged: bool = Field(default=False)
    acknowledged_by: Optional[str] = Field(default=None)
    acknowledged_at: Optional[datetime] = Field(default=None)

    @model_validator(mode="after")
    def _validate_acknowledgment(self) -> "AlertModel":
        """Acknowledged alerts must name the admin and time."""
        if self.acknowledged and (not self.acknowledged_by or self.acknowledged_at is None):
            raise ValueError("acknowledged alerts require acknowledged_by and acknowledged_at")
        return self
