"""
Notification Service

Routes alert, escalation and max-escalation notifications to channels by
severity and logs every delivery attempt.

Routing:
- critical: email + websocket + sms
- high:     email + websocket
- medium:   email + websocket
- low:      websocket
Escalations go to the contact configured for the level reached.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import select

from afip_monitor.database import SessionFactory
from afip_monitor.models.alert import ComplianceAlert, CriticalTicket
from afip_monitor.models.monitoring import MonitoredEntity
from afip_monitor.models.notification import (
    NotificationChannel,
    NotificationLog,
    NotificationSetting,
    NotificationType,
)

from .channels import ChannelProvider, ChannelResult, LogChannelProvider, Notification

logger = logging.getLogger(__name__)

SEVERITY_CHANNELS: Dict[str, List[NotificationChannel]] = {
    "critical": [NotificationChannel.EMAIL, NotificationChannel.WEBSOCKET, NotificationChannel.SMS],
    "high": [NotificationChannel.EMAIL, NotificationChannel.WEBSOCKET],
    "medium": [NotificationChannel.EMAIL, NotificationChannel.WEBSOCKET],
    "low": [NotificationChannel.WEBSOCKET],
}

ESCALATION_CHANNELS = [NotificationChannel.EMAIL, NotificationChannel.WEBSOCKET]

# Channels that need an explicit recipient
ADDRESSED_CHANNELS = {NotificationChannel.EMAIL, NotificationChannel.SMS}


@dataclass
class DispatchResult:
    """Synchronous acknowledgment of a dispatch."""
    notification_type: NotificationType
    alert_id: Optional[str]
    results: List[ChannelResult] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return any(r.success for r in self.results)

    @property
    def channels(self) -> List[str]:
        return [r.channel.value for r in self.results if r.success]

    def to_dict(self) -> dict:
        return {
            "notification_type": self.notification_type.value,
            "alert_id": self.alert_id,
            "delivered": self.delivered,
            "results": [
                {
                    "channel": r.channel.value,
                    "success": r.success,
                    "recipient": r.recipient,
                    "error": r.error,
                }
                for r in self.results
            ],
        }


class NotificationService:
    """
    Service for dispatching notifications.

    Handles:
    - Alert created / updated notifications
    - Escalation notifications per level
    - Max-escalation (unresolved) notifications
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        providers: Optional[Dict[NotificationChannel, ChannelProvider]] = None,
    ):
        self.session_factory = session_factory
        self.providers = providers or {
            channel: LogChannelProvider(channel) for channel in NotificationChannel
        }

    async def _get_settings(self, cuit: str) -> Optional[NotificationSetting]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(NotificationSetting).where(NotificationSetting.cuit == cuit)
            )
            return result.scalar_one_or_none()

    async def _email_enabled(self, cuit: str) -> bool:
        async with self.session_factory() as db:
            entity = await db.get(MonitoredEntity, cuit)
            return entity is None or bool(entity.email_notifications)

    async def _send(
        self,
        notification: Notification,
        channel: NotificationChannel,
    ) -> ChannelResult:
        provider = self.providers.get(channel)
        if provider is None:
            return ChannelResult(channel=channel, success=False, error="Channel not configured")
        try:
            return await provider.send(notification)
        except Exception as e:
            logger.error(f"Failed to send {notification.notification_type.value} via {channel.value}: {e}")
            return ChannelResult(
                channel=channel,
                success=False,
                recipient=notification.recipient,
                error=str(e),
            )

    async def _fan_out(
        self,
        base: Notification,
        channels: List[NotificationChannel],
        recipients: List[str],
    ) -> DispatchResult:
        dispatch = DispatchResult(notification_type=base.notification_type, alert_id=base.alert_id)

        for channel in channels:
            if channel in ADDRESSED_CHANNELS:
                for recipient in recipients:
                    notification = _with_recipient(base, recipient)
                    dispatch.results.append(await self._send(notification, channel))
            else:
                dispatch.results.append(await self._send(base, channel))

        await self._log_results(base, dispatch)
        return dispatch

    async def _log_results(self, notification: Notification, dispatch: DispatchResult) -> None:
        if not dispatch.results:
            return
        async with self.session_factory() as db:
            for result in dispatch.results:
                db.add(NotificationLog(
                    alert_id=notification.alert_id,
                    cuit=notification.cuit,
                    notification_type=notification.notification_type.value,
                    channel=result.channel.value,
                    recipient=result.recipient,
                    escalation_level=notification.escalation_level,
                    delivered=result.success,
                    error_message=result.error,
                ))
            await db.commit()

    # =========================================================================
    # Public API
    # =========================================================================

    async def dispatch_alert(self, alert: ComplianceAlert, action: str = "created") -> DispatchResult:
        """Notify the channels routed for the alert's severity."""
        notification_type = (
            NotificationType.ALERT_UPDATED if action == "updated" else NotificationType.ALERT_CREATED
        )
        base = Notification(
            notification_type=notification_type,
            cuit=alert.cuit,
            alert_id=alert.id,
            alert_type=alert.alert_type,
            severity=alert.severity,
            message=alert.message,
            details=alert.details or {},
        )

        channels = list(SEVERITY_CHANNELS.get(alert.severity, [NotificationChannel.WEBSOCKET]))
        if not await self._email_enabled(alert.cuit):
            channels = [c for c in channels if c != NotificationChannel.EMAIL]

        settings = await self._get_settings(alert.cuit)
        recipients = list(settings.alert_recipients or []) if settings else []

        dispatch = await self._fan_out(base, channels, recipients)
        logger.debug(f"Alert {alert.id} ({alert.severity}) dispatched via {dispatch.channels}")
        return dispatch

    async def dispatch_escalation(self, alert: ComplianceAlert, level: int) -> DispatchResult:
        """Notify the contact configured for an escalation level."""
        base = Notification(
            notification_type=NotificationType.ALERT_ESCALATED,
            cuit=alert.cuit,
            alert_id=alert.id,
            alert_type=alert.alert_type,
            severity=alert.severity,
            message=alert.message,
            escalation_level=level,
        )

        settings = await self._get_settings(alert.cuit)
        if settings is None or not settings.escalation_enabled:
            logger.debug(f"No escalation configuration for {alert.cuit}")
            return DispatchResult(notification_type=base.notification_type, alert_id=alert.id)

        contacts = list(settings.escalation_contacts or [])
        if level - 1 >= len(contacts):
            logger.debug(f"No escalation contact for {alert.cuit} at level {level}")
            return DispatchResult(notification_type=base.notification_type, alert_id=alert.id)

        return await self._fan_out(base, ESCALATION_CHANNELS, [contacts[level - 1]])

    async def dispatch_max_escalation(
        self,
        alert: ComplianceAlert,
        ticket: CriticalTicket,
    ) -> DispatchResult:
        """Terminal notification once every escalation level was exhausted."""
        base = Notification(
            notification_type=NotificationType.MAX_ESCALATION_REACHED,
            cuit=alert.cuit,
            alert_id=alert.id,
            alert_type=alert.alert_type,
            severity="critical",
            message=ticket.message,
            escalation_level=alert.escalation_level,
            details={"ticket_id": ticket.id},
        )
        settings = await self._get_settings(alert.cuit)
        recipients = []
        if settings:
            recipients = list(dict.fromkeys(
                list(settings.escalation_contacts or []) + list(settings.alert_recipients or [])
            ))
        return await self._fan_out(base, ESCALATION_CHANNELS, recipients)


def _with_recipient(notification: Notification, recipient: str) -> Notification:
    return Notification(
        notification_type=notification.notification_type,
        cuit=notification.cuit,
        alert_id=notification.alert_id,
        alert_type=notification.alert_type,
        severity=notification.severity,
        message=notification.message,
        recipient=recipient,
        escalation_level=notification.escalation_level,
        details=notification.details,
    )
