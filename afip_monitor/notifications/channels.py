"""
Notification Channels

Delivery is an external concern; the core only decides whether and when a
notification goes out. Each channel provider returns a ChannelResult so the
caller gets a synchronous acknowledgment of the dispatch.

LogChannelProvider is the console-mode provider used in development and
whenever no real provider is wired in.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from afip_monitor.models.notification import NotificationChannel, NotificationType

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """What gets delivered."""
    notification_type: NotificationType
    cuit: str
    alert_id: Optional[str]
    alert_type: str
    severity: str
    message: str
    recipient: Optional[str] = None
    escalation_level: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        if self.notification_type == NotificationType.ALERT_ESCALATED:
            return f"[Escalation L{self.escalation_level}] {self.severity.upper()} {self.alert_type} - CUIT {self.cuit}"
        if self.notification_type == NotificationType.MAX_ESCALATION_REACHED:
            return f"[UNRESOLVED] {self.alert_type} - CUIT {self.cuit}"
        return f"[{self.severity.upper()}] {self.alert_type} - CUIT {self.cuit}"


@dataclass
class ChannelResult:
    """Result of sending through one channel."""
    channel: NotificationChannel
    success: bool
    recipient: Optional[str] = None
    error: Optional[str] = None


class ChannelProvider(ABC):
    """Abstract base class for delivery channels."""

    channel: NotificationChannel

    @abstractmethod
    async def send(self, notification: Notification) -> ChannelResult:
        """Deliver a notification."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes the notification to the log instead of delivering it."""

    def __init__(self, channel: NotificationChannel):
        self.channel = channel

    async def send(self, notification: Notification) -> ChannelResult:
        logger.info(
            f"[{self.channel.value}] to={notification.recipient or 'broadcast'} "
            f"subject={notification.subject!r} message={notification.message!r}"
        )
        return ChannelResult(
            channel=self.channel,
            success=True,
            recipient=notification.recipient,
        )
