"""
Tests for the Escalation Engine.

Timers are stored on a paused scheduler; tests drive execution directly
through execute_escalation, the way a fired timer would.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from afip_monitor.alerts.manager import AlertManager
from afip_monitor.escalation.engine import EscalationEngine
from afip_monitor.models.alert import ComplianceAlert, CriticalTicket, EscalationState
from afip_monitor.models.monitoring import MonitoredEntity

CUIT = "20123456786"


async def add_alert(session_factory, severity="critical", status="active", created_at=None):
    async with session_factory() as db:
        alert = ComplianceAlert(
            cuit=CUIT,
            alert_type="fiscal_status_change",
            severity=severity,
            status=status,
            message="Fiscal status changed from active to inactive",
            created_at=created_at or datetime(2024, 3, 12, 9, 0),
            updated_at=created_at or datetime(2024, 3, 12, 9, 0),
        )
        db.add(alert)
        await db.commit()
        return alert


async def get_state(session_factory, alert_id):
    async with session_factory() as db:
        return await db.get(EscalationState, alert_id)


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest_asyncio.fixture
async def engine(session_factory, notifier, scheduler, test_settings, clock):
    engine = EscalationEngine(session_factory, notifier, scheduler, settings=test_settings, clock=clock)
    yield engine
    engine.stop()


# =============================================================================
# Delays
# =============================================================================

class TestEscalationDelay:

    def test_initial_delay_by_severity(self, engine):
        assert engine.calculate_escalation_delay("critical") == timedelta(minutes=30)
        assert engine.calculate_escalation_delay("high") == timedelta(minutes=120)
        assert engine.calculate_escalation_delay("medium") == timedelta(minutes=60)
        assert engine.calculate_escalation_delay("low") is None

    def test_interval_sequence(self, engine):
        assert engine.interval_after_level(1) == timedelta(minutes=60)
        assert engine.interval_after_level(2) == timedelta(minutes=180)
        assert engine.interval_after_level(3) == timedelta(minutes=360)


# =============================================================================
# Scheduling
# =============================================================================

class TestScheduleEscalation:

    @pytest.mark.asyncio
    async def test_critical_on_tuesday_morning_fires_after_thirty_minutes(
        self, engine, session_factory, scheduler
    ):
        alert = await add_alert(session_factory)

        fire_at = await engine.schedule_escalation(alert.id, alert.to_dict())

        assert fire_at == datetime(2024, 3, 12, 9, 30)
        assert engine.is_scheduled(alert.id)
        assert scheduler.get_job(f"escalation:{alert.id}") is not None

        state = await get_state(session_factory, alert.id)
        assert state.is_active
        assert state.level == 0
        assert state.next_escalation_at == datetime(2024, 3, 12, 9, 30)

    @pytest.mark.asyncio
    async def test_weekend_is_deferred(self, engine, session_factory, clock):
        clock.now = datetime(2024, 3, 16, 10, 0)
        alert = await add_alert(session_factory)

        fire_at = await engine.schedule_escalation(alert.id, alert.to_dict())

        assert fire_at == datetime(2024, 3, 18, 8, 30)

    @pytest.mark.asyncio
    async def test_low_severity_never_escalates(self, engine, session_factory):
        alert = await add_alert(session_factory, severity="low")

        assert await engine.schedule_escalation(alert.id, alert.to_dict()) is None
        assert not engine.is_scheduled(alert.id)
        assert await get_state(session_factory, alert.id) is None

    @pytest.mark.asyncio
    async def test_schedule_is_noop_when_active(self, engine, session_factory, scheduler):
        alert = await add_alert(session_factory)

        first = await engine.schedule_escalation(alert.id, alert.to_dict())
        second = await engine.schedule_escalation(alert.id, alert.to_dict())

        assert first is not None
        assert second is None
        assert len(scheduler.get_jobs()) == 1

    @pytest.mark.asyncio
    async def test_entity_with_escalation_disabled(self, engine, session_factory):
        async with session_factory() as db:
            db.add(MonitoredEntity(cuit=CUIT, escalation_enabled=False))
            await db.commit()
        alert = await add_alert(session_factory)

        assert await engine.schedule_escalation(alert.id, alert.to_dict()) is None
        assert not engine.is_scheduled(alert.id)


# =============================================================================
# Execution
# =============================================================================

class TestExecuteEscalation:

    @pytest.mark.asyncio
    async def test_levels_progress_and_rearm(self, engine, session_factory, notifier, clock):
        alert = await add_alert(session_factory)
        await engine.schedule_escalation(alert.id, alert.to_dict())

        clock.now = datetime(2024, 3, 12, 9, 30)
        outcome = await engine.execute_escalation(alert.id)

        assert outcome.action == "escalated"
        assert outcome.level == 1
        assert outcome.next_escalation_at == datetime(2024, 3, 12, 10, 30)
        assert engine.next_run(alert.id) == datetime(2024, 3, 12, 10, 30)
        notifier.dispatch_escalation.assert_awaited_once()
        assert notifier.dispatch_escalation.await_args.args[1] == 1

        async with session_factory() as db:
            refreshed = await db.get(ComplianceAlert, alert.id)
            assert refreshed.escalation_level == 1

    @pytest.mark.asyncio
    async def test_max_level_creates_ticket_and_stops(self, engine, session_factory, notifier, scheduler):
        alert = await add_alert(session_factory)
        await engine.schedule_escalation(alert.id, alert.to_dict())

        levels = []
        for _ in range(3):
            outcome = await engine.execute_escalation(alert.id)
            levels.append(outcome.level)
        assert levels == [1, 2, 3]
        assert engine.is_scheduled(alert.id)

        outcome = await engine.execute_escalation(alert.id)

        assert outcome.action == "max_reached"
        assert outcome.level == 3
        assert outcome.ticket_id is not None
        assert not engine.is_scheduled(alert.id)
        assert scheduler.get_job(f"escalation:{alert.id}") is None
        notifier.dispatch_max_escalation.assert_awaited_once()

        state = await get_state(session_factory, alert.id)
        assert not state.is_active
        assert state.level == 3

        async with session_factory() as db:
            tickets = (await db.execute(select(CriticalTicket))).scalars().all()
            refreshed = await db.get(ComplianceAlert, alert.id)
        assert len(tickets) == 1
        assert tickets[0].alert_id == alert.id
        assert tickets[0].severity == "critical"
        assert tickets[0].status == "open"
        assert tickets[0].message.startswith("ESCALATION FAILED")
        assert refreshed.escalation_level == 3

        # A stray timer after the terminal step does nothing
        outcome = await engine.execute_escalation(alert.id)
        assert outcome.action == "skipped"
        async with session_factory() as db:
            count = await db.scalar(select(func.count(CriticalTicket.id)))
        assert count == 1

    @pytest.mark.asyncio
    async def test_resolved_alert_is_cancelled_silently(self, engine, session_factory, notifier):
        alert = await add_alert(session_factory)
        await engine.schedule_escalation(alert.id, alert.to_dict())

        async with session_factory() as db:
            row = await db.get(ComplianceAlert, alert.id)
            row.status = "resolved"
            await db.commit()

        outcome = await engine.execute_escalation(alert.id)

        assert outcome.action == "cancelled"
        notifier.dispatch_escalation.assert_not_awaited()
        assert not (await get_state(session_factory, alert.id)).is_active

    @pytest.mark.asyncio
    async def test_failure_rearms_when_alert_still_open(self, engine, session_factory, monkeypatch):
        alert = await add_alert(session_factory)
        monkeypatch.setattr(engine, "_execute", AsyncMock(side_effect=RuntimeError("db locked")))

        assert await engine.execute_escalation(alert.id) is None
        assert engine.is_scheduled(alert.id)

    @pytest.mark.asyncio
    async def test_failure_not_rearmed_when_resolved(self, engine, session_factory, monkeypatch):
        alert = await add_alert(session_factory, status="resolved")
        monkeypatch.setattr(engine, "_execute", AsyncMock(side_effect=RuntimeError("db locked")))

        assert await engine.execute_escalation(alert.id) is None
        assert not engine.is_scheduled(alert.id)


# =============================================================================
# Cancellation through the alert lifecycle
# =============================================================================

class TestAcknowledgeCancelsEscalation:

    @pytest.mark.asyncio
    async def test_no_notification_after_acknowledge(
        self, engine, session_factory, notifier, scheduler, test_settings, clock
    ):
        manager = AlertManager(
            session_factory,
            notifier=notifier,
            escalation_engine=engine,
            settings=test_settings,
            clock=clock,
        )
        result = await manager.create_alert({
            "cuit": CUIT,
            "alert_type": "fiscal_status_change",
            "severity": "critical",
            "message": "Fiscal status changed from active to inactive",
        })
        alert_id = result.alert.id
        assert engine.is_scheduled(alert_id)

        await manager.acknowledge_alert(alert_id, "ops@example.com")

        assert not engine.is_scheduled(alert_id)
        assert scheduler.get_job(f"escalation:{alert_id}") is None

        # Past the original fire time
        clock.advance(hours=2)
        outcome = await engine.execute_escalation(alert_id)

        assert outcome.action == "cancelled"
        notifier.dispatch_escalation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, engine, session_factory):
        alert = await add_alert(session_factory)
        await engine.schedule_escalation(alert.id, alert.to_dict())

        assert await engine.cancel_escalation(alert.id) is True
        assert await engine.cancel_escalation(alert.id) is False


# =============================================================================
# Recovery and maintenance
# =============================================================================

class TestRecovery:

    @pytest.mark.asyncio
    async def test_start_rearms_and_executes_overdue(self, engine, session_factory, notifier, clock):
        overdue = await add_alert(session_factory)
        future = await add_alert(session_factory)
        resolved = await add_alert(session_factory, status="resolved")

        async with session_factory() as db:
            db.add(EscalationState(
                alert_id=overdue.id, level=0,
                scheduled_at=clock.now - timedelta(hours=1),
                next_escalation_at=clock.now - timedelta(minutes=30),
            ))
            db.add(EscalationState(
                alert_id=future.id, level=1,
                scheduled_at=clock.now - timedelta(hours=1),
                next_escalation_at=clock.now + timedelta(minutes=45),
            ))
            db.add(EscalationState(
                alert_id=resolved.id, level=0,
                scheduled_at=clock.now - timedelta(hours=1),
                next_escalation_at=clock.now + timedelta(minutes=10),
            ))
            await db.commit()

        summary = await engine.start()

        assert summary == {"rearmed": 1, "executed": 1, "dropped": 1}
        assert (await get_state(session_factory, overdue.id)).level == 1
        assert engine.next_run(future.id) == clock.now + timedelta(minutes=45)
        assert not engine.is_scheduled(resolved.id)
        assert not (await get_state(session_factory, resolved.id)).is_active
        notifier.dispatch_escalation.assert_awaited_once()


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_cleanup_completed_escalations(self, engine, session_factory, clock):
        async with session_factory() as db:
            db.add(EscalationState(alert_id="alert_old", is_active=False, updated_at=clock.now - timedelta(days=10)))
            db.add(EscalationState(alert_id="alert_recent", is_active=False, updated_at=clock.now - timedelta(days=2)))
            db.add(EscalationState(alert_id="alert_active", is_active=True, updated_at=clock.now - timedelta(days=10)))
            await db.commit()

        removed = await engine.cleanup_completed_escalations(days=7)

        assert removed == 1
        assert await get_state(session_factory, "alert_old") is None
        assert await get_state(session_factory, "alert_recent") is not None

    @pytest.mark.asyncio
    async def test_stats_and_metrics(self, engine, session_factory, clock):
        async with session_factory() as db:
            db.add(EscalationState(alert_id="a1", level=1, is_active=True, created_at=clock.now))
            db.add(EscalationState(alert_id="a2", level=3, is_active=False, created_at=clock.now))
            await db.commit()

        stats = await engine.get_escalation_stats(days=7)

        assert stats["total_escalations"] == 2
        assert stats["level_1_escalations"] == 1
        assert stats["level_3_escalations"] == 1
        assert stats["active_escalations"] == 1
        assert stats["avg_escalation_level"] == pytest.approx(2.0)

        metrics = engine.get_metrics()
        assert metrics["config"]["max_levels"] == 3
        assert metrics["config"]["intervals_minutes"] == [60, 180, 360]
