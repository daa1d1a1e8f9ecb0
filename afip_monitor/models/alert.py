"""
Alert Models

Compliance alerts, their escalation state and the critical tickets created
when escalation is exhausted.
"""

from enum import Enum

from sqlalchemy import Column, String, DateTime, Boolean, Integer, Float, JSON, Text, Index

from afip_monitor.database import Base
from .base import generate_id, utcnow


class AlertSeverity(str, Enum):
    """Severity levels for alerts."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {
    "info": 0,
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}

ESCALATING_SEVERITIES = frozenset({AlertSeverity.HIGH.value, AlertSeverity.CRITICAL.value})


class AlertStatus(str, Enum):
    """Lifecycle of an alert. Transitions only move forward."""
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class ComplianceAlert(Base):
    """
    Alert raised for a monitored CUIT.

    Alerts of the same (cuit, alert_type) inside the dedup window are merged
    into a single row; occurrence_count tracks how many times it fired.
    """
    __tablename__ = "compliance_alerts"

    id = Column(String, primary_key=True, default=lambda: generate_id("alert"))
    cuit = Column(String(11), nullable=False, index=True)

    alert_type = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    status = Column(String, nullable=False, default=AlertStatus.ACTIVE.value)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    source = Column(String, nullable=False, default="compliance_monitor")
    risk_score = Column(Float, nullable=True)

    escalation_level = Column(Integer, nullable=False, default=0)
    occurrence_count = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String, nullable=True)
    resolution = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_compliance_alerts_dedup", "cuit", "alert_type", "status", "created_at"),
    )

    @property
    def is_open(self) -> bool:
        return self.status == AlertStatus.ACTIVE.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cuit": self.cuit,
            "alert_type": self.alert_type,
            "severity": self.severity,
            "status": self.status,
            "message": self.message,
            "details": self.details or {},
            "source": self.source,
            "risk_score": self.risk_score,
            "escalation_level": self.escalation_level,
            "occurrence_count": self.occurrence_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "resolution": self.resolution,
        }


class EscalationState(Base):
    """
    Persisted escalation progress for one alert.

    `level` is the last level executed (0 until the first escalation fires).
    Rows are soft-removed by clearing is_active so a restart never re-arms
    a cancelled or finished escalation.
    """
    __tablename__ = "escalation_states"

    alert_id = Column(String, primary_key=True)
    level = Column(Integer, nullable=False, default=0)
    scheduled_at = Column(DateTime, nullable=False, default=utcnow)
    next_escalation_at = Column(DateTime, nullable=True)
    last_escalated_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class CriticalTicket(Base):
    """Fallback record for alerts that exhausted every escalation level."""
    __tablename__ = "critical_tickets"

    id = Column(String, primary_key=True, default=lambda: generate_id("ticket"))
    alert_id = Column(String, nullable=False, index=True)
    cuit = Column(String(11), nullable=False)
    alert_type = Column(String, nullable=False)
    severity = Column(String, nullable=False, default=AlertSeverity.CRITICAL.value)
    message = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="open")
    escalation_failed_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)
