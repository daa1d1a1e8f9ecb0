"""
Alert Schemas

Pydantic schemas for alert input. Failures are re-raised as the monitor's
ValidationError so callers see one error type.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from afip_monitor.errors import ValidationError
from afip_monitor.models.alert import AlertSeverity
from afip_monitor.validation import cuit_errors, normalize_cuit


class AlertCreate(BaseModel):
    """Input for AlertManager.create_alert."""
    cuit: str
    alert_type: str = Field(min_length=1, max_length=100)
    severity: AlertSeverity
    message: str = Field(min_length=1)
    details: Dict[str, Any] = Field(default_factory=dict)
    source: str = "compliance_monitor"
    risk_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("cuit", mode="before")
    @classmethod
    def validate_cuit(cls, v):
        errors = cuit_errors(v)
        if errors:
            raise ValueError(errors[0])
        return normalize_cuit(v)

    @field_validator("alert_type", "message")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


def parse_alert_data(data: Dict[str, Any]) -> AlertCreate:
    """Validate raw alert data, raising ValidationError with per-field errors."""
    if isinstance(data, AlertCreate):
        return data
    try:
        return AlertCreate.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            {
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
            }
            for err in e.errors()
        ]
        fields = ", ".join(err["field"] for err in errors)
        raise ValidationError(
            f"Invalid alert data: {fields}",
            code="INVALID_ALERT",
            details={"errors": errors},
        ) from e
