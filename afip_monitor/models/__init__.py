"""
Consolidated models package.

Importing this package registers every table on Base.metadata.
"""
from .base import generate_id, utcnow
from .monitoring import (
    ComplianceStatus,
    PollingLogStatus,
    MonitoredEntity,
    ComplianceResult,
    RiskFactorSet,
    PollingLog,
    ComplianceMetric,
)
from .alert import (
    AlertSeverity,
    AlertStatus,
    SEVERITY_RANK,
    ESCALATING_SEVERITIES,
    ComplianceAlert,
    EscalationState,
    CriticalTicket,
)
from .notification import (
    NotificationType,
    NotificationChannel,
    NotificationSetting,
    NotificationLog,
)

__all__ = [
    "generate_id",
    "utcnow",
    # Monitoring
    "ComplianceStatus",
    "PollingLogStatus",
    "MonitoredEntity",
    "ComplianceResult",
    "RiskFactorSet",
    "PollingLog",
    "ComplianceMetric",
    # Alerts
    "AlertSeverity",
    "AlertStatus",
    "SEVERITY_RANK",
    "ESCALATING_SEVERITIES",
    "ComplianceAlert",
    "EscalationState",
    "CriticalTicket",
    # Notifications
    "NotificationType",
    "NotificationChannel",
    "NotificationSetting",
    "NotificationLog",
]
