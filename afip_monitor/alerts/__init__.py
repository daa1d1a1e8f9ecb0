"""Alert lifecycle management."""
from .manager import AlertManager, AlertResult, ACTION_CREATED, ACTION_UPDATED
from .schemas import AlertCreate, parse_alert_data

__all__ = [
    "AlertManager",
    "AlertResult",
    "ACTION_CREATED",
    "ACTION_UPDATED",
    "AlertCreate",
    "parse_alert_data",
]
