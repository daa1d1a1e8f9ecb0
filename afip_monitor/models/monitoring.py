"""
Monitoring Models

Monitored entities, recorded compliance snapshots, risk factor audit rows
and polling logs.
"""

from enum import Enum

from sqlalchemy import Column, String, DateTime, Boolean, Integer, Float, JSON, Text, Index

from afip_monitor.database import Base
from .base import generate_id, utcnow


class ComplianceStatus(str, Enum):
    """Status derived from the risk score."""
    UNKNOWN = "unknown"          # Monitoring enabled, never checked
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class PollingLogStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class MonitoredEntity(Base):
    """
    A taxpayer under compliance monitoring.

    Soft-disabled (enabled = False) when monitoring is turned off so the
    check history stays attached to the CUIT.
    """
    __tablename__ = "monitored_entities"

    cuit = Column(String(11), primary_key=True)
    business_name = Column(String, nullable=True)
    category = Column(String, nullable=True)  # Industry, e.g. "Servicios"

    # Current state
    risk_score = Column(Float, nullable=False, default=0.0)
    status = Column(String, nullable=False, default=ComplianceStatus.UNKNOWN.value)
    last_check = Column(DateTime, nullable=True)
    next_check = Column(DateTime, nullable=True)
    polling_interval = Column(Integer, nullable=True)  # Minutes

    # Monitoring configuration
    enabled = Column(Boolean, nullable=False, default=True)
    auto_polling = Column(Boolean, nullable=False, default=True)
    custom_interval = Column(Integer, nullable=True)  # Minutes, overrides risk-based interval
    email_notifications = Column(Boolean, nullable=False, default=True)
    escalation_enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ComplianceResult(Base):
    """
    One recorded compliance snapshot.

    `data` holds the serialized snapshot:
        {"cuit": ..., "timestamp": ..., "checks": {...}, "alerts": [...]}
    Rows are never updated once written.
    """
    __tablename__ = "compliance_results"

    id = Column(String, primary_key=True, default=lambda: generate_id("result"))
    cuit = Column(String(11), nullable=False, index=True)
    check_date = Column(DateTime, nullable=False, default=utcnow, index=True)
    overall_status = Column(String, nullable=False)
    score = Column(Float, nullable=False)  # 0-100
    data = Column(JSON, nullable=False, default=dict)
    triggered_by = Column(String, nullable=True)


class RiskFactorSet(Base):
    """Append-only record of one risk score calculation."""
    __tablename__ = "risk_factor_sets"

    id = Column(String, primary_key=True, default=lambda: generate_id("risk"))
    cuit = Column(String(11), nullable=False)

    historic_compliance = Column(Float, nullable=False)
    current_status = Column(Float, nullable=False)
    predictive_patterns = Column(Float, nullable=False)
    adjustment_factor = Column(Float, nullable=False)
    final_score = Column(Float, nullable=False)

    # Weights in effect for this calculation
    weights = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_risk_factor_sets_cuit_created", "cuit", "created_at"),
    )


class PollingLog(Base):
    """Start / complete / error entries for every check cycle."""
    __tablename__ = "polling_logs"

    id = Column(String, primary_key=True, default=lambda: generate_id("poll"))
    cuit = Column(String(11), nullable=False, index=True)
    triggered_by = Column(String, nullable=False, default="scheduled")
    status = Column(String, nullable=False, default=PollingLogStatus.STARTED.value)

    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    interval_used = Column(Integer, nullable=True)
    changes_detected = Column(Boolean, nullable=True)
    risk_score_after = Column(Float, nullable=True)
    alerts_generated = Column(Integer, nullable=True)
    execution_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)


class ComplianceMetric(Base):
    """Daily roll-up of polling logs."""
    __tablename__ = "compliance_metrics"

    date = Column(String(10), primary_key=True)  # YYYY-MM-DD
    total_checks = Column(Integer, nullable=False, default=0)
    successful_checks = Column(Integer, nullable=False, default=0)
    failed_checks = Column(Integer, nullable=False, default=0)
    avg_response_time_ms = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
