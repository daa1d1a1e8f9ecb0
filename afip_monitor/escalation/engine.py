"""
Escalation Engine

Pushes unacknowledged alerts up the notification chain on a timer.

Lifecycle per alert:
    scheduled (level 0) -> L1 executed -> L2 executed -> L3 executed
    -> max reached: critical ticket + terminal notification, state cleared
Cancelling (acknowledge / resolve) is possible at any point.

Initial delay by severity: critical 30 min, high 120 min, medium 60 min,
low never escalates. Follow-up delays use the interval sequence
(60, 180, 360 min). Every delay is adjusted for working hours.

Timers are APScheduler DateTrigger jobs (`escalation:<alert_id>`); the
progress is persisted in EscalationState so a restart can re-arm them.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger
from sqlalchemy import case, delete, func, select

from afip_monitor.config import Settings, settings as default_settings
from afip_monitor.database import SessionFactory
from afip_monitor.models.alert import (
    AlertSeverity,
    AlertStatus,
    ComplianceAlert,
    CriticalTicket,
    EscalationState,
)
from afip_monitor.models.base import utcnow
from afip_monitor.models.monitoring import MonitoredEntity
from afip_monitor.notifications.service import NotificationService

from .business_hours import WorkingHours

logger = logging.getLogger(__name__)

# Retry delay after an execution failure on a still-open alert
FAILURE_RETRY_DELAY = timedelta(minutes=5)


@dataclass
class EscalationOutcome:
    """What one execution did."""
    alert_id: str
    action: str  # escalated / max_reached / cancelled / skipped
    level: int = 0
    next_escalation_at: Optional[datetime] = None
    ticket_id: Optional[str] = None


class EscalationEngine:
    """
    Independent timer subsystem for alert escalation.

    Usage:
        engine = EscalationEngine(session_factory, notifier, scheduler)
        await engine.start()  # re-arms persisted escalations
        await engine.schedule_escalation(alert.id, alert.to_dict())
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: NotificationService,
        scheduler,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        working_hours: Optional[WorkingHours] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.scheduler = scheduler
        self.settings = settings or default_settings
        self.clock = clock
        self.working_hours = working_hours or WorkingHours.from_settings(self.settings)

        self.max_levels = self.settings.ESCALATION_MAX_LEVELS
        self.intervals = list(self.settings.ESCALATION_INTERVALS_MINUTES)

        # alert_id -> next fire time (naive UTC)
        self._timers: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> Dict[str, int]:
        """Reload persisted escalations and re-arm them."""
        self._running = True
        summary = await self.load_pending_escalations()
        logger.info(
            f"Escalation engine started: {summary['rearmed']} re-armed, "
            f"{summary['executed']} overdue executed, {summary['dropped']} dropped"
        )
        return summary

    def stop(self) -> None:
        with self._lock:
            alert_ids = list(self._timers)
            for alert_id in alert_ids:
                self._remove_job(alert_id)
            self._timers.clear()
        self._running = False
        logger.info(f"Escalation engine stopped, {len(alert_ids)} timers cancelled")

    async def load_pending_escalations(self) -> Dict[str, int]:
        now = self.clock()
        summary = {"rearmed": 0, "executed": 0, "dropped": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(EscalationState, ComplianceAlert.status)
                .join(ComplianceAlert, ComplianceAlert.id == EscalationState.alert_id, isouter=True)
                .where(EscalationState.is_active.is_(True))
            )
            rows = result.all()

            overdue = []
            for state, alert_status in rows:
                if alert_status != AlertStatus.ACTIVE.value:
                    state.is_active = False
                    state.next_escalation_at = None
                    summary["dropped"] += 1
                    continue

                if state.next_escalation_at is None or state.next_escalation_at <= now:
                    overdue.append(state.alert_id)
                else:
                    self._arm(state.alert_id, state.next_escalation_at)
                    summary["rearmed"] += 1

            await db.commit()

        for alert_id in overdue:
            await self.execute_escalation(alert_id)
            summary["executed"] += 1

        return summary

    # =========================================================================
    # Delays
    # =========================================================================

    def calculate_escalation_delay(self, severity: str) -> Optional[timedelta]:
        """Initial delay before level 1, None when the severity never escalates."""
        minutes = {
            AlertSeverity.CRITICAL.value: self.settings.ESCALATION_CRITICAL_DELAY_MINUTES,
            AlertSeverity.HIGH.value: self.settings.ESCALATION_HIGH_DELAY_MINUTES,
            AlertSeverity.MEDIUM.value: self.settings.ESCALATION_MEDIUM_DELAY_MINUTES,
        }.get(severity)
        if minutes is None:
            return None
        return timedelta(minutes=minutes)

    def interval_after_level(self, level: int) -> timedelta:
        index = min(max(level, 1), len(self.intervals)) - 1
        return timedelta(minutes=self.intervals[index])

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def schedule_escalation(
        self,
        alert_id: str,
        alert_data: Dict[str, Any],
    ) -> Optional[datetime]:
        """
        Arm the first escalation for an alert.

        No-op when an escalation is already active for it. Returns the
        (naive UTC) time level 1 will fire, or None when nothing was armed.
        """
        with self._lock:
            if alert_id in self._timers:
                logger.debug(f"Escalation already scheduled for alert {alert_id}")
                return None

        delay = self.calculate_escalation_delay(alert_data.get("severity"))
        if delay is None:
            logger.debug(f"No escalation required for alert {alert_id} (severity: {alert_data.get('severity')})")
            return None

        now = self.clock()
        adjusted = self.working_hours.adjust_delay(delay, now)
        fire_at = now + adjusted

        async with self.session_factory() as db:
            cuit = alert_data.get("cuit")
            if cuit:
                entity = await db.get(MonitoredEntity, cuit)
                if entity is not None and not entity.escalation_enabled:
                    logger.debug(f"Escalation disabled for {cuit}, alert {alert_id} not scheduled")
                    return None

            state = await db.get(EscalationState, alert_id)
            if state is not None and state.is_active:
                logger.debug(f"Escalation already active for alert {alert_id}")
                return None
            if state is None:
                state = EscalationState(alert_id=alert_id)
                db.add(state)

            state.level = 0
            state.scheduled_at = now
            state.next_escalation_at = fire_at
            state.last_escalated_at = None
            state.is_active = True
            await db.commit()

        self._arm(alert_id, fire_at)
        logger.info(
            f"Escalation scheduled for alert {alert_id} "
            f"(severity={alert_data.get('severity')}, delay={adjusted.total_seconds() / 60:.0f} min)"
        )
        return fire_at

    async def execute_escalation(self, alert_id: str) -> Optional[EscalationOutcome]:
        """
        Fire the next escalation step for an alert.

        Never raises. A failure re-arms a retry unless the alert turns out to
        be acknowledged or resolved.
        """
        with self._lock:
            self._timers.pop(alert_id, None)
            self._remove_job(alert_id)

        try:
            return await self._execute(alert_id)
        except Exception as e:
            logger.error(f"Escalation execution failed for alert {alert_id}: {e}")
            await self._rearm_after_failure(alert_id)
            return None

    async def _execute(self, alert_id: str) -> EscalationOutcome:
        now = self.clock()

        async with self.session_factory() as db:
            alert = await db.get(ComplianceAlert, alert_id)
            state = await db.get(EscalationState, alert_id)

            if alert is None or not alert.is_open:
                if state is not None and state.is_active:
                    state.is_active = False
                    state.next_escalation_at = None
                    await db.commit()
                logger.debug(f"Alert {alert_id} no longer active, escalation cancelled")
                return EscalationOutcome(alert_id=alert_id, action="cancelled")

            if state is None or not state.is_active:
                logger.warning(f"No active escalation state for alert {alert_id}")
                return EscalationOutcome(alert_id=alert_id, action="skipped")

            if state.level >= self.max_levels:
                ticket = CriticalTicket(
                    alert_id=alert.id,
                    cuit=alert.cuit,
                    alert_type=alert.alert_type,
                    severity=AlertSeverity.CRITICAL.value,
                    message=f"ESCALATION FAILED: {alert.message}",
                    escalation_failed_at=now,
                    created_at=now,
                )
                db.add(ticket)
                state.is_active = False
                state.next_escalation_at = None

                if not await self._still_open(db, alert_id):
                    await db.rollback()
                    return EscalationOutcome(alert_id=alert_id, action="cancelled")
                await db.commit()

                logger.warning(f"Alert {alert_id} reached max escalation level without resolution, ticket {ticket.id}")
                await self._notify_max(alert, ticket)
                return EscalationOutcome(
                    alert_id=alert_id,
                    action="max_reached",
                    level=state.level,
                    ticket_id=ticket.id,
                )

            new_level = state.level + 1
            delay = self.working_hours.adjust_delay(self.interval_after_level(new_level), now)
            next_at = now + delay

            state.level = new_level
            state.last_escalated_at = now
            state.next_escalation_at = next_at
            alert.escalation_level = new_level

            if not await self._still_open(db, alert_id):
                await db.rollback()
                return EscalationOutcome(alert_id=alert_id, action="cancelled")
            await db.commit()

        self._arm(alert_id, next_at)
        await self._notify_level(alert, new_level)

        logger.info(f"Escalation executed for alert {alert_id}: level {new_level}/{self.max_levels}")
        return EscalationOutcome(
            alert_id=alert_id,
            action="escalated",
            level=new_level,
            next_escalation_at=next_at,
        )

    @staticmethod
    async def _still_open(db, alert_id: str) -> bool:
        """Re-read the alert status from the database right before committing."""
        status = await db.scalar(
            select(ComplianceAlert.status).where(ComplianceAlert.id == alert_id)
        )
        return status == AlertStatus.ACTIVE.value

    async def _notify_level(self, alert: ComplianceAlert, level: int) -> None:
        try:
            await self.notifier.dispatch_escalation(alert, level)
        except Exception as e:
            logger.error(f"Failed to send escalation notification for alert {alert.id}: {e}")

    async def _notify_max(self, alert: ComplianceAlert, ticket: CriticalTicket) -> None:
        try:
            await self.notifier.dispatch_max_escalation(alert, ticket)
        except Exception as e:
            logger.error(f"Failed to send max escalation notification for alert {alert.id}: {e}")

    async def _rearm_after_failure(self, alert_id: str) -> None:
        try:
            async with self.session_factory() as db:
                alert = await db.get(ComplianceAlert, alert_id)
            if alert is not None and not alert.is_open:
                return
        except Exception as e:
            logger.error(f"Could not verify alert {alert_id} after escalation failure: {e}")
        self._arm(alert_id, self.clock() + FAILURE_RETRY_DELAY)

    async def cancel_escalation(self, alert_id: str) -> bool:
        """Cancel the timer and deactivate the persisted state. Idempotent."""
        with self._lock:
            had_timer = self._timers.pop(alert_id, None) is not None
            self._remove_job(alert_id)

        async with self.session_factory() as db:
            state = await db.get(EscalationState, alert_id)
            was_active = state is not None and state.is_active
            if was_active:
                state.is_active = False
                state.next_escalation_at = None
                await db.commit()

        if had_timer or was_active:
            logger.debug(f"Escalation cancelled for alert {alert_id}")
        return had_timer or was_active

    def is_scheduled(self, alert_id: str) -> bool:
        with self._lock:
            return alert_id in self._timers

    def next_run(self, alert_id: str) -> Optional[datetime]:
        with self._lock:
            return self._timers.get(alert_id)

    # =========================================================================
    # Timer registry
    # =========================================================================

    @staticmethod
    def job_id_for(alert_id: str) -> str:
        return f"escalation:{alert_id}"

    def _arm(self, alert_id: str, fire_at: datetime) -> None:
        """Create or replace the timer job for an alert."""
        job_id = self.job_id_for(alert_id)
        run_date = fire_at.replace(tzinfo=timezone.utc)
        with self._lock:
            if not self.scheduler.running:
                self._remove_job(alert_id)
            self.scheduler.add_job(
                self.execute_escalation,
                trigger=DateTrigger(run_date=run_date),
                args=[alert_id],
                id=job_id,
                name=f"Escalation {alert_id}",
                replace_existing=True,
                misfire_grace_time=None,
            )
            self._timers[alert_id] = fire_at

    def _remove_job(self, alert_id: str) -> None:
        try:
            self.scheduler.remove_job(self.job_id_for(alert_id))
        except JobLookupError:
            pass

    # =========================================================================
    # Maintenance and stats
    # =========================================================================

    async def cleanup_completed_escalations(self, days: Optional[int] = None) -> int:
        """Delete inactive escalation states untouched for `days`."""
        days = days if days is not None else self.settings.ESCALATION_STATE_RETENTION_DAYS
        cutoff = self.clock() - timedelta(days=days)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(EscalationState)
                .where(EscalationState.is_active.is_(False))
                .where(EscalationState.updated_at < cutoff)
            )
            await db.commit()
            removed = result.rowcount or 0

        if removed:
            logger.info(f"Cleaned up {removed} completed escalations")
        return removed

    async def get_escalation_stats(self, days: int = 7) -> Dict[str, Any]:
        since = self.clock() - timedelta(days=days)
        async with self.session_factory() as db:
            result = await db.execute(
                select(
                    func.count(EscalationState.alert_id),
                    func.sum(case((EscalationState.level == 1, 1), else_=0)),
                    func.sum(case((EscalationState.level == 2, 1), else_=0)),
                    func.sum(case((EscalationState.level == 3, 1), else_=0)),
                    func.sum(case((EscalationState.is_active.is_(True), 1), else_=0)),
                    func.avg(EscalationState.level),
                ).where(EscalationState.created_at >= since)
            )
            total, level_1, level_2, level_3, active, avg_level = result.one()

            tickets = await db.scalar(
                select(func.count(CriticalTicket.id)).where(CriticalTicket.created_at >= since)
            )

        with self._lock:
            timers = len(self._timers)

        return {
            "period_days": days,
            "total_escalations": total or 0,
            "level_1_escalations": level_1 or 0,
            "level_2_escalations": level_2 or 0,
            "level_3_escalations": level_3 or 0,
            "active_escalations": active or 0,
            "avg_escalation_level": float(avg_level) if avg_level is not None else 0.0,
            "critical_tickets": tickets or 0,
            "active_timers": timers,
        }

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            timers = len(self._timers)
        return {
            "running": self._running,
            "active_timers": timers,
            "config": {
                "max_levels": self.max_levels,
                "intervals_minutes": list(self.intervals),
                "critical_delay_minutes": self.settings.ESCALATION_CRITICAL_DELAY_MINUTES,
                "high_delay_minutes": self.settings.ESCALATION_HIGH_DELAY_MINUTES,
                "medium_delay_minutes": self.settings.ESCALATION_MEDIUM_DELAY_MINUTES,
                "working_days": sorted(self.working_hours.working_days),
                "working_hours": [self.working_hours.start_hour, self.working_hours.end_hour],
            },
        }
