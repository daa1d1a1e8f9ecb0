"""Notification dispatch."""
from .channels import ChannelProvider, ChannelResult, LogChannelProvider, Notification
from .service import DispatchResult, NotificationService, SEVERITY_CHANNELS

__all__ = [
    "ChannelProvider",
    "ChannelResult",
    "LogChannelProvider",
    "Notification",
    "DispatchResult",
    "NotificationService",
    "SEVERITY_CHANNELS",
]
