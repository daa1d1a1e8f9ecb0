#!/usr/bin/env python3
"""
AFIP Compliance Monitor service.

Builds every component explicitly and runs the monitor on an
AsyncIOScheduler until SIGINT / SIGTERM.

Usage:
    # Run the monitoring service
    python -m afip_monitor.runner run

    # One-off manual check
    python -m afip_monitor.runner check 20-12345678-6

    # Recalculate every enabled entity's risk score
    python -m afip_monitor.runner recalculate

    # Purge old resolved alerts and finished escalations
    python -m afip_monitor.runner cleanup
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncEngine

from afip_monitor.afip.client import AfipClient
from afip_monitor.alerts.manager import AlertManager
from afip_monitor.config import Settings, settings as default_settings
from afip_monitor.database import (
    SessionFactory,
    create_engine_and_sessionmaker,
    dispose_engine,
    init_db,
)
from afip_monitor.errors import MonitorError
from afip_monitor.escalation.engine import EscalationEngine
from afip_monitor.monitoring.monitor import ComplianceMonitor
from afip_monitor.notifications.service import NotificationService
from afip_monitor.scoring.engine import RiskScoringEngine

logger = logging.getLogger("afip_monitor")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


@dataclass
class MonitorApp:
    """Every wired component of one running service."""
    settings: Settings
    engine: AsyncEngine
    session_factory: SessionFactory
    scheduler: AsyncIOScheduler
    afip_client: AfipClient
    notifier: NotificationService
    risk_engine: RiskScoringEngine
    escalation_engine: EscalationEngine
    alert_manager: AlertManager
    monitor: ComplianceMonitor

    async def close(self) -> None:
        self.monitor.stop()
        self.escalation_engine.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.afip_client.close()
        await dispose_engine(self.engine)


def build_app(settings: Optional[Settings] = None) -> MonitorApp:
    settings = settings or default_settings
    engine, session_factory = create_engine_and_sessionmaker(settings.DATABASE_URL)
    scheduler = AsyncIOScheduler(timezone=settings.TIMEZONE)

    afip_client = AfipClient(settings=settings)
    notifier = NotificationService(session_factory)
    risk_engine = RiskScoringEngine(session_factory, settings=settings)
    escalation_engine = EscalationEngine(session_factory, notifier, scheduler, settings=settings)
    alert_manager = AlertManager(
        session_factory,
        notifier=notifier,
        escalation_engine=escalation_engine,
        settings=settings,
    )
    monitor = ComplianceMonitor(
        session_factory,
        afip_client,
        risk_engine,
        alert_manager,
        scheduler,
        settings=settings,
    )
    return MonitorApp(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        scheduler=scheduler,
        afip_client=afip_client,
        notifier=notifier,
        risk_engine=risk_engine,
        escalation_engine=escalation_engine,
        alert_manager=alert_manager,
        monitor=monitor,
    )


def setup_maintenance_jobs(app: MonitorApp) -> None:
    """Periodic cleanup of escalation states and old resolved alerts."""
    app.scheduler.add_job(
        app.escalation_engine.cleanup_completed_escalations,
        'interval',
        hours=1,
        id='escalation_cleanup',
        name='Escalation State Cleanup',
        replace_existing=True,
    )
    app.scheduler.add_job(
        app.alert_manager.cleanup_old_alerts,
        'cron',
        hour=3,
        minute=0,
        id='alert_cleanup',
        name='Resolved Alert Cleanup',
        replace_existing=True,
    )
    logger.info("Maintenance jobs configured")


async def run_service(app: MonitorApp) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Not supported on Windows event loops
            signal.signal(sig, lambda *_: stop_event.set())

    await init_db(app.engine)
    app.scheduler.start()
    await app.escalation_engine.start()
    await app.monitor.start()
    setup_maintenance_jobs(app)

    logger.info("AFIP compliance monitor running")
    await stop_event.wait()
    logger.info("Shutting down AFIP compliance monitor")


async def run_check(app: MonitorApp, cuit: str) -> int:
    await init_db(app.engine)
    try:
        result = await app.monitor.check_compliance_manual(cuit)
    except MonitorError as e:
        print(json.dumps({"error": e.to_dict()}, indent=2, default=str))
        return 1
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0


async def run_recalculate(app: MonitorApp) -> int:
    await init_db(app.engine)
    summary = await app.risk_engine.recalculate_all()
    print(json.dumps(summary.to_dict(), indent=2))
    return 0 if summary.errors == 0 else 1


async def run_cleanup(app: MonitorApp) -> int:
    await init_db(app.engine)
    alerts = await app.alert_manager.cleanup_old_alerts()
    escalations = await app.escalation_engine.cleanup_completed_escalations()
    print(json.dumps({"alerts_removed": alerts, "escalations_removed": escalations}, indent=2))
    return 0


async def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="AFIP compliance monitor")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override LOG_LEVEL"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Run the monitoring service")
    check = subparsers.add_parser("check", help="Run a manual compliance check")
    check.add_argument("cuit", help="CUIT to check")
    subparsers.add_parser("recalculate", help="Recalculate all risk scores")
    subparsers.add_parser("cleanup", help="Purge old alerts and escalation states")

    args = parser.parse_args(argv)
    configure_logging(args.log_level or default_settings.LOG_LEVEL)

    app = build_app()
    try:
        if args.command == "run":
            await run_service(app)
            return 0
        if args.command == "check":
            return await run_check(app, args.cuit)
        if args.command == "recalculate":
            return await run_recalculate(app)
        return await run_cleanup(app)
    finally:
        await app.close()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
