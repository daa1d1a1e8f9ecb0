"""
Alert Manager

Alert lifecycle: create (with deduplication), acknowledge, resolve, and
the retention sweep.

Deduplication: an active alert with the same (cuit, alert_type) created
inside the dedup window (24 h) is refreshed in place instead of inserting a
new row.

States only move forward:
    active -> acknowledged -> resolved
    active -> resolved
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, case, delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from afip_monitor.config import Settings, settings as default_settings
from afip_monitor.database import SessionFactory
from afip_monitor.errors import NotFoundError, PersistenceError
from afip_monitor.models.alert import (
    ESCALATING_SEVERITIES,
    AlertSeverity,
    AlertStatus,
    ComplianceAlert,
)
from afip_monitor.models.base import utcnow
from afip_monitor.notifications.service import NotificationService

from .schemas import AlertCreate, parse_alert_data

logger = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"

SEVERITY_ORDER = case(
    (ComplianceAlert.severity == AlertSeverity.CRITICAL.value, 4),
    (ComplianceAlert.severity == AlertSeverity.HIGH.value, 3),
    (ComplianceAlert.severity == AlertSeverity.MEDIUM.value, 2),
    (ComplianceAlert.severity == AlertSeverity.LOW.value, 1),
    else_=0,
)


@dataclass
class AlertResult:
    alert: ComplianceAlert
    action: str

    @property
    def alert_id(self) -> str:
        return self.alert.id

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "alert": self.alert.to_dict()}


class AlertManager:
    """
    Service for the alert lifecycle.

    Usage:
        manager = AlertManager(session_factory, notifier, escalation_engine)
        result = await manager.create_alert({...})
        await manager.acknowledge_alert(result.alert.id, "ops@example.com")
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: Optional[NotificationService] = None,
        escalation_engine=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.escalation_engine = escalation_engine
        self.settings = settings or default_settings
        self.clock = clock
        self._dedup_locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    # =========================================================================
    # Create
    # =========================================================================

    async def create_alert(self, data: Dict[str, Any]) -> AlertResult:
        """
        Create or refresh an alert.

        Raises ValidationError synchronously for malformed data and
        PersistenceError when the alert cannot be saved. Notification and
        escalation failures are logged, never raised.
        """
        payload: AlertCreate = parse_alert_data(data)

        # Lookup and insert for one (cuit, alert_type) must not interleave
        async with self._dedup_locks[(payload.cuit, payload.alert_type)]:
            try:
                alert, action = await self._save_alert(payload)
            except SQLAlchemyError as e:
                logger.error(f"Failed to save alert {payload.alert_type} for {payload.cuit}: {e}")
                raise PersistenceError(
                    f"Failed to save alert for {payload.cuit}",
                    details={"cuit": payload.cuit, "alert_type": payload.alert_type},
                ) from e

        logger.info(f"Alert {action} for {alert.cuit}: {alert.alert_type} ({alert.severity}) [{alert.id}]")

        await self._dispatch(alert, action)
        if alert.severity in ESCALATING_SEVERITIES:
            await self._schedule_escalation(alert)

        return AlertResult(alert=alert, action=action)

    async def _save_alert(self, payload: AlertCreate) -> Tuple[ComplianceAlert, str]:
        now = self.clock()
        window_start = now - timedelta(hours=self.settings.ALERT_DEDUP_WINDOW_HOURS)

        async with self.session_factory() as db:
            result = await db.execute(
                select(ComplianceAlert)
                .where(ComplianceAlert.cuit == payload.cuit)
                .where(ComplianceAlert.alert_type == payload.alert_type)
                .where(ComplianceAlert.status == AlertStatus.ACTIVE.value)
                .where(ComplianceAlert.created_at >= window_start)
                .order_by(ComplianceAlert.created_at.desc())
                .limit(1)
            )
            alert = result.scalar_one_or_none()

            if alert is not None:
                alert.message = payload.message
                alert.severity = payload.severity.value
                alert.details = payload.details
                alert.risk_score = payload.risk_score if payload.risk_score is not None else alert.risk_score
                alert.occurrence_count = (alert.occurrence_count or 1) + 1
                alert.updated_at = now
                action = ACTION_UPDATED
            else:
                alert = ComplianceAlert(
                    cuit=payload.cuit,
                    alert_type=payload.alert_type,
                    severity=payload.severity.value,
                    status=AlertStatus.ACTIVE.value,
                    message=payload.message,
                    details=payload.details,
                    source=payload.source,
                    risk_score=payload.risk_score,
                    escalation_level=0,
                    occurrence_count=1,
                    created_at=now,
                    updated_at=now,
                )
                db.add(alert)
                action = ACTION_CREATED

            await db.commit()

        return alert, action

    async def _dispatch(self, alert: ComplianceAlert, action: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.dispatch_alert(alert, action)
        except Exception as e:
            logger.error(f"Failed to dispatch notification for alert {alert.id}: {e}")

    async def _schedule_escalation(self, alert: ComplianceAlert) -> None:
        if self.escalation_engine is None:
            return
        try:
            await self.escalation_engine.schedule_escalation(alert.id, alert.to_dict())
        except Exception as e:
            logger.error(f"Failed to schedule escalation for alert {alert.id}: {e}")

    async def _cancel_escalation(self, alert_id: str) -> None:
        if self.escalation_engine is None:
            return
        try:
            await self.escalation_engine.cancel_escalation(alert_id)
        except Exception as e:
            logger.error(f"Failed to cancel escalation for alert {alert_id}: {e}")

    # =========================================================================
    # Transitions
    # =========================================================================

    async def get_alert(self, alert_id: str) -> ComplianceAlert:
        async with self.session_factory() as db:
            alert = await db.get(ComplianceAlert, alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found", details={"alert_id": alert_id})
        return alert

    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> ComplianceAlert:
        """active -> acknowledged. Already acknowledged or resolved is a no-op."""
        try:
            async with self.session_factory() as db:
                alert = await db.get(ComplianceAlert, alert_id)
                if alert is None:
                    raise NotFoundError(f"Alert {alert_id} not found", details={"alert_id": alert_id})

                if alert.status != AlertStatus.ACTIVE.value:
                    logger.debug(f"Alert {alert_id} already {alert.status}, acknowledge ignored")
                    return alert

                now = self.clock()
                alert.status = AlertStatus.ACKNOWLEDGED.value
                alert.acknowledged_at = now
                alert.acknowledged_by = acknowledged_by
                alert.updated_at = now
                await db.commit()
        except SQLAlchemyError as e:
            raise self._persistence_error("acknowledge", alert_id, e) from e

        await self._cancel_escalation(alert_id)
        logger.info(f"Alert {alert_id} acknowledged by {acknowledged_by}")
        return alert

    async def resolve_alert(
        self,
        alert_id: str,
        resolved_by: str,
        resolution: Optional[str] = None,
    ) -> ComplianceAlert:
        """active / acknowledged -> resolved. Already resolved is a no-op."""
        try:
            async with self.session_factory() as db:
                alert = await db.get(ComplianceAlert, alert_id)
                if alert is None:
                    raise NotFoundError(f"Alert {alert_id} not found", details={"alert_id": alert_id})

                if alert.status == AlertStatus.RESOLVED.value:
                    logger.debug(f"Alert {alert_id} already resolved")
                    return alert

                now = self.clock()
                alert.status = AlertStatus.RESOLVED.value
                alert.resolved_at = now
                alert.resolved_by = resolved_by
                alert.resolution = resolution
                alert.updated_at = now
                await db.commit()
        except SQLAlchemyError as e:
            raise self._persistence_error("resolve", alert_id, e) from e

        await self._cancel_escalation(alert_id)
        logger.info(f"Alert {alert_id} resolved by {resolved_by}")
        return alert

    def _persistence_error(self, operation: str, alert_id: str, error: Exception) -> PersistenceError:
        logger.error(f"Failed to {operation} alert {alert_id}: {error}")
        return PersistenceError(
            f"Failed to {operation} alert {alert_id}",
            details={"alert_id": alert_id, "operation": operation},
        )

    # =========================================================================
    # Queries and maintenance
    # =========================================================================

    async def get_active_alerts(
        self,
        cuit: Optional[str] = None,
        severity: Optional[str] = None,
        alert_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ComplianceAlert]:
        """Active alerts, most severe first, then most recent."""
        query = select(ComplianceAlert).where(ComplianceAlert.status == AlertStatus.ACTIVE.value)
        if cuit:
            query = query.where(ComplianceAlert.cuit == cuit)
        if severity:
            query = query.where(ComplianceAlert.severity == severity)
        if alert_type:
            query = query.where(ComplianceAlert.alert_type == alert_type)

        query = (
            query.order_by(SEVERITY_ORDER.desc(), ComplianceAlert.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def cleanup_old_alerts(self, retention_days: Optional[int] = None) -> int:
        """Delete resolved alerts resolved before the retention window."""
        days = retention_days if retention_days is not None else self.settings.ALERT_RETENTION_DAYS
        cutoff = self.clock() - timedelta(days=days)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(ComplianceAlert)
                .where(ComplianceAlert.status == AlertStatus.RESOLVED.value)
                .where(ComplianceAlert.resolved_at < cutoff)
            )
            await db.commit()
            removed = result.rowcount or 0

        if removed:
            logger.info(f"Cleaned up {removed} resolved alerts older than {days} days")
        return removed

    async def get_alert_stats(self, window_days: int = 30) -> Dict[str, Any]:
        """Counts by severity and status plus resolution/acknowledgment rates."""
        since = self.clock() - timedelta(days=window_days)
        async with self.session_factory() as db:
            result = await db.execute(
                select(ComplianceAlert).where(ComplianceAlert.created_at >= since)
            )
            alerts = result.scalars().all()

            by_severity_rows = await db.execute(
                select(ComplianceAlert.severity, func.count(ComplianceAlert.id))
                .where(ComplianceAlert.created_at >= since)
                .group_by(ComplianceAlert.severity)
            )
            by_severity = {severity: count for severity, count in by_severity_rows.all()}

            active_critical = await db.scalar(
                select(func.count(ComplianceAlert.id)).where(and_(
                    ComplianceAlert.status == AlertStatus.ACTIVE.value,
                    ComplianceAlert.severity == AlertSeverity.CRITICAL.value,
                ))
            )

        total = len(alerts)
        by_status = {status.value: 0 for status in AlertStatus}
        for alert in alerts:
            by_status[alert.status] = by_status.get(alert.status, 0) + 1

        resolved = [a for a in alerts if a.status == AlertStatus.RESOLVED.value]
        acknowledged = [a for a in alerts if a.acknowledged_at is not None]

        latencies = [
            (a.resolved_at - a.created_at).total_seconds() / 3600
            for a in resolved
            if a.resolved_at and a.created_at
        ]

        return {
            "window_days": window_days,
            "total": total,
            "by_severity": {s.value: by_severity.get(s.value, 0) for s in AlertSeverity},
            "by_status": by_status,
            "active_critical": active_critical or 0,
            "resolution_rate": round(len(resolved) / total, 4) if total else 0.0,
            "acknowledgment_rate": round(len(acknowledged) / total, 4) if total else 0.0,
            "avg_resolution_hours": round(sum(latencies) / len(latencies), 2) if latencies else None,
        }
