"""
Notification Models

Per-entity notification settings and the log of dispatched notifications.
"""

from enum import Enum

from sqlalchemy import Column, String, DateTime, Boolean, Integer, JSON

from afip_monitor.database import Base
from .base import generate_id, utcnow


class NotificationType(str, Enum):
    """Types of notifications that can be sent."""
    ALERT_CREATED = "alert_created"
    ALERT_UPDATED = "alert_updated"
    ALERT_ESCALATED = "alert_escalated"
    MAX_ESCALATION_REACHED = "max_escalation_reached"


class NotificationChannel(str, Enum):
    """Delivery channels for notifications."""
    EMAIL = "email"
    WEBSOCKET = "websocket"
    SMS = "sms"


class NotificationSetting(Base):
    """
    Notification settings for one CUIT.

    escalation_contacts is ordered by level: index 0 is notified at
    escalation level 1, index 1 at level 2, and so on.
    """
    __tablename__ = "notification_settings"

    cuit = Column(String(11), primary_key=True)
    alert_recipients = Column(JSON, nullable=False, default=list)
    escalation_contacts = Column(JSON, nullable=False, default=list)
    escalation_enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class NotificationLog(Base):
    """Log of sent notifications for audit and debugging."""
    __tablename__ = "notification_logs"

    id = Column(String, primary_key=True, default=lambda: generate_id("notif"))
    alert_id = Column(String, nullable=True, index=True)
    cuit = Column(String(11), nullable=True)

    notification_type = Column(String, nullable=False)
    channel = Column(String, nullable=False)
    recipient = Column(String, nullable=True)
    escalation_level = Column(Integer, nullable=True)

    sent_at = Column(DateTime, nullable=False, default=utcnow)
    delivered = Column(Boolean, default=True)
    error_message = Column(String, nullable=True)
