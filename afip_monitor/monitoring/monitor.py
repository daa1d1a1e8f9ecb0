"""
Compliance Monitor

Orchestrates the monitoring cycle for every CUIT:

    scheduler fires -> fetch snapshot (3 sub-checks in parallel)
    -> risk score -> diff against the previous snapshot -> persist
    -> alerts for significant changes -> re-derive the polling interval

The external source is guarded by a circuit breaker; fresh results are
served from a short-TTL cache. A check failure never propagates into the
scheduler: it is logged, counted against the breaker and written to the
polling log.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field, replace as dataclass_replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.jobstores.base import JobLookupError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from afip_monitor.afip.client import ComplianceDataSource
from afip_monitor.config import Settings, settings as default_settings
from afip_monitor.database import SessionFactory
from afip_monitor.errors import ComplianceCheckError, DataSourceError, MonitorError, PersistenceError
from afip_monitor.models.alert import SEVERITY_RANK
from afip_monitor.models.base import utcnow
from afip_monitor.models.monitoring import (
    ComplianceMetric,
    ComplianceResult,
    MonitoredEntity,
    PollingLog,
    PollingLogStatus,
)
from afip_monitor.validation import validate_cuit

from .cache import TTLCache
from .circuit_breaker import CircuitBreaker
from .polling import PollingJob, PollingRegistry, calculate_polling_interval, determine_status
from .snapshot import (
    CHECK_NAMES,
    ComplianceSnapshot,
    DetectedChange,
    detect_significant_changes,
)

logger = logging.getLogger(__name__)

CHECK_COMPLETED = "completed"
CHECK_SKIPPED = "skipped"
CHECK_FAILED = "failed"

CACHE_SWEEP_JOB_ID = "monitor:cache_sweep"
DAILY_METRICS_JOB_ID = "monitor:daily_metrics"

ENTITY_CONFIG_FIELDS = (
    "business_name",
    "category",
    "enabled",
    "auto_polling",
    "custom_interval",
    "email_notifications",
    "escalation_enabled",
)


@dataclass
class CheckResult:
    """Outcome of one compliance check."""
    cuit: str
    status: str
    triggered_by: str
    timestamp: Optional[datetime] = None
    risk_score: Optional[float] = None
    compliance_status: Optional[str] = None
    changes: List[Dict[str, Any]] = field(default_factory=list)
    alerts_generated: int = 0
    polling_interval: Optional[int] = None
    execution_time_ms: Optional[int] = None
    from_cache: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    cause: Optional[BaseException] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cuit": self.cuit,
            "status": self.status,
            "triggered_by": self.triggered_by,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "risk_score": self.risk_score,
            "compliance_status": self.compliance_status,
            "changes": self.changes,
            "alerts_generated": self.alerts_generated,
            "polling_interval": self.polling_interval,
            "execution_time_ms": self.execution_time_ms,
            "from_cache": self.from_cache,
            "reason": self.reason,
            "error": self.error,
            "error_code": self.error_code,
        }


def error_code_for(error: Exception) -> str:
    if isinstance(error, MonitorError):
        return error.code
    if isinstance(error, SQLAlchemyError):
        return PersistenceError.code
    return ComplianceCheckError.code


class ComplianceMonitor:
    """
    Adaptive compliance monitor.

    Usage:
        monitor = ComplianceMonitor(
            session_factory, afip_client, risk_engine, alert_manager, scheduler,
        )
        await monitor.start()
        await monitor.add_entity_monitoring("20123456786", {"category": "Servicios"})
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        data_source: ComplianceDataSource,
        risk_engine,
        alert_manager,
        scheduler,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.data_source = data_source
        self.risk_engine = risk_engine
        self.alert_manager = alert_manager
        self.scheduler = scheduler
        self.settings = settings or default_settings
        self.clock = clock
        self.tz = ZoneInfo(self.settings.TIMEZONE)

        self.breaker = CircuitBreaker(
            threshold=self.settings.CIRCUIT_BREAKER_THRESHOLD,
            cooldown=timedelta(seconds=self.settings.CIRCUIT_BREAKER_COOLDOWN_SECONDS),
            clock=clock,
        )
        self.cache = TTLCache(ttl=timedelta(seconds=self.settings.CACHE_TTL_SECONDS), clock=clock)
        self.polling = PollingRegistry(
            scheduler,
            tz=self.tz,
            daily_hour=self.settings.POLLING_DAILY_HOUR,
            clock=lambda: self.clock().replace(tzinfo=timezone.utc),
        )

        self._lock = threading.Lock()
        self._in_flight: set = set()
        self._disabled: set = set()
        self._running = False
        self._metrics = {
            "total_checks": 0,
            "successful_checks": 0,
            "failed_checks": 0,
            "skipped_checks": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "total_response_time_ms": 0,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> int:
        """Schedule polling for every enabled entity plus housekeeping jobs."""
        entities = await self.load_monitoring_config()
        scheduled = 0
        for entity in entities:
            try:
                await self.schedule_polling_for_entity(entity)
                scheduled += 1
            except Exception as e:
                logger.error(f"Failed to schedule polling for {entity.cuit}: {e}")

        self.scheduler.add_job(
            self._sweep_cache,
            "interval",
            minutes=5,
            id=CACHE_SWEEP_JOB_ID,
            name="Compliance cache sweep",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.update_daily_metrics,
            "interval",
            hours=1,
            id=DAILY_METRICS_JOB_ID,
            name="Compliance daily metrics",
            replace_existing=True,
        )

        self._running = True
        logger.info(f"Compliance monitor started: {scheduled} entities scheduled")
        return scheduled

    def stop(self) -> None:
        cancelled = self.polling.cancel_all()
        for job_id in (CACHE_SWEEP_JOB_ID, DAILY_METRICS_JOB_ID):
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                pass
        self.cache.clear()
        self._running = False
        logger.info(f"Compliance monitor stopped, {cancelled} polling jobs cancelled")

    async def load_monitoring_config(self) -> List[MonitoredEntity]:
        """Entities that are enabled with automatic polling."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(MonitoredEntity)
                .where(MonitoredEntity.enabled.is_(True))
                .where(MonitoredEntity.auto_polling.is_(True))
            )
            return list(result.scalars().all())

    def _interval_for(self, risk_score: float, custom_interval: Optional[int] = None) -> int:
        if custom_interval:
            return custom_interval
        return calculate_polling_interval(
            risk_score,
            tiers=[tuple(tier) for tier in self.settings.POLLING_TIERS],
            default_minutes=self.settings.POLLING_DEFAULT_MINUTES,
        )

    async def schedule_polling_for_entity(self, entity: MonitoredEntity) -> PollingJob:
        """Create or replace the polling job for an entity and record it."""
        interval = self._interval_for(entity.risk_score or 0.0, entity.custom_interval)
        job = self.polling.schedule(entity.cuit, interval, self._scheduled_check)

        async with self.session_factory() as db:
            row = await db.get(MonitoredEntity, entity.cuit)
            if row is not None:
                row.polling_interval = interval
                row.next_check = _to_naive_utc(job.next_run)
                await db.commit()

        logger.debug(f"Polling for {entity.cuit} scheduled {job.schedule}")
        return job

    async def _scheduled_check(self, cuit: str) -> None:
        await self.perform_compliance_check(cuit, triggered_by="scheduled")
        self.polling.mark_run(cuit, self.clock())

    async def _sweep_cache(self) -> None:
        removed = self.cache.purge_expired()
        if removed:
            logger.debug(f"Purged {removed} expired cache entries")

    # =========================================================================
    # Check cycle
    # =========================================================================

    async def perform_compliance_check(
        self,
        cuit: str,
        triggered_by: str = "scheduled",
    ) -> CheckResult:
        """
        Run one check cycle for a CUIT. Never raises.

        Skipped while the circuit breaker is open, while another check for
        the same CUIT is running, or once monitoring was removed.
        """
        if self.breaker.is_open():
            logger.warning(f"Circuit breaker open, skipping check for {cuit} (trigger: {triggered_by})")
            self._count("skipped_checks")
            return CheckResult(cuit=cuit, status=CHECK_SKIPPED, triggered_by=triggered_by, reason="circuit_open")

        cached = self.cache.get(cuit)
        if cached is not None:
            self._count("cache_hits")
            return dataclass_replace(cached, from_cache=True, triggered_by=triggered_by)
        self._count("cache_misses")

        with self._lock:
            if cuit in self._disabled:
                reason = "disabled"
            elif cuit in self._in_flight:
                reason = "in_progress"
            else:
                reason = None
                self._in_flight.add(cuit)
        if reason:
            logger.debug(f"Skipping check for {cuit} (trigger: {triggered_by}): {reason}")
            self._count("skipped_checks")
            return CheckResult(cuit=cuit, status=CHECK_SKIPPED, triggered_by=triggered_by, reason=reason)

        started = time.perf_counter()
        log_id = None
        self._count("total_checks")
        try:
            log_id = await self._start_polling_log(cuit, triggered_by)
            result = await self._run_check(cuit, triggered_by)
        except Exception as e:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            self.breaker.record_failure()
            self._count("failed_checks")
            logger.error(f"Compliance check failed for {cuit} (trigger: {triggered_by}): {e}")
            await self._fail_polling_log(log_id, cuit, str(e), elapsed_ms)
            return CheckResult(
                cuit=cuit,
                status=CHECK_FAILED,
                triggered_by=triggered_by,
                execution_time_ms=elapsed_ms,
                error=str(e),
                error_code=error_code_for(e),
                cause=e,
            )
        finally:
            with self._lock:
                self._in_flight.discard(cuit)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        result.execution_time_ms = elapsed_ms
        self.breaker.record_success()
        await self._complete_polling_log(log_id, result)

        if result.status == CHECK_COMPLETED:
            self._count("successful_checks")
            self._count("total_response_time_ms", elapsed_ms)
            self.cache.set(cuit, result)
            logger.info(
                f"Compliance check for {cuit} completed (trigger: {triggered_by}): "
                f"risk={result.risk_score:.3f}, status={result.compliance_status}, "
                f"changes={len(result.changes)}, alerts={result.alerts_generated}"
            )
        return result

    async def _run_check(self, cuit: str, triggered_by: str) -> CheckResult:
        snapshot = await self.get_current_compliance_data(cuit)
        previous = await self.get_previous_snapshot(cuit)

        risk_score = await self.risk_engine.calculate_risk_score(cuit, snapshot)
        status = determine_status(risk_score)
        changes = detect_significant_changes(previous, snapshot)
        now = self.clock()

        async with self.session_factory() as db:
            entity = await db.get(MonitoredEntity, cuit)
            interval = self._interval_for(risk_score, entity.custom_interval if entity else None)
            job = self.polling.get(cuit)
            reschedule = job is not None and self._needs_reschedule(job, interval)
            effective_interval = interval if (job is None or reschedule) else job.interval_minutes

            # Removal may have happened while the snapshot was fetched
            if self._is_disabled(cuit):
                return CheckResult(cuit=cuit, status=CHECK_SKIPPED, triggered_by=triggered_by, reason="disabled")

            if entity is not None:
                entity.risk_score = risk_score
                entity.status = status.value
                entity.last_check = now
                entity.next_check = now + timedelta(minutes=effective_interval)
                entity.polling_interval = effective_interval
                entity.updated_at = now

            db.add(ComplianceResult(
                cuit=cuit,
                check_date=now,
                overall_status=status.value,
                score=round(risk_score * 100, 2),
                data={
                    **snapshot.to_dict(),
                    "risk_score": risk_score,
                    "alerts": [change.to_dict() for change in changes],
                },
                triggered_by=triggered_by,
            ))
            await db.commit()

        alerts_generated = await self.process_detected_changes(cuit, changes, risk_score)

        if reschedule:
            await self.adjust_polling_if_needed(cuit, interval)

        return CheckResult(
            cuit=cuit,
            status=CHECK_COMPLETED,
            triggered_by=triggered_by,
            timestamp=now,
            risk_score=risk_score,
            compliance_status=status.value,
            changes=[change.to_dict() for change in changes],
            alerts_generated=alerts_generated,
            polling_interval=effective_interval,
        )

    async def get_current_compliance_data(self, cuit: str) -> ComplianceSnapshot:
        """
        Fetch the three sub-checks in parallel.

        A failed sub-check is left out of the snapshot; when all three fail
        the source is considered unavailable and DataSourceError is raised.
        """
        results = await asyncio.gather(
            self.data_source.get_fiscal_status(cuit),
            self.data_source.get_registration_status(cuit),
            self.data_source.get_entity_profile(cuit),
            return_exceptions=True,
        )

        checks: Dict[str, Dict[str, Any]] = {}
        errors: Dict[str, str] = {}
        for name, value in zip(CHECK_NAMES, results):
            if isinstance(value, BaseException):
                logger.warning(f"Sub-check {name} failed for {cuit}: {value}")
                errors[name] = str(value)
            else:
                checks[name] = value

        if not checks:
            raise DataSourceError(
                f"All compliance sub-checks failed for {cuit}",
                details={"cuit": cuit, "errors": errors},
            )

        return ComplianceSnapshot(
            cuit=cuit,
            timestamp=self.clock(),
            failed_checks=tuple(errors),
            **checks,
        )

    async def get_previous_snapshot(self, cuit: str) -> Optional[ComplianceSnapshot]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ComplianceResult)
                .where(ComplianceResult.cuit == cuit)
                .order_by(ComplianceResult.check_date.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()

        if row is None:
            return None
        return ComplianceSnapshot.from_result(row)

    async def process_detected_changes(
        self,
        cuit: str,
        changes: List[DetectedChange],
        risk_score: float,
    ) -> int:
        """Raise alerts for changes at or above the configured severity."""
        threshold = SEVERITY_RANK.get(self.settings.ALERT_MIN_CHANGE_SEVERITY, SEVERITY_RANK["high"])
        generated = 0
        for change in changes:
            if SEVERITY_RANK.get(change.severity, 0) < threshold:
                continue
            try:
                await self.alert_manager.create_alert({
                    "cuit": cuit,
                    "alert_type": change.type,
                    "severity": change.severity,
                    "message": change.description,
                    "details": change.to_dict(),
                    "source": "compliance_monitor",
                    "risk_score": risk_score,
                })
                generated += 1
            except Exception as e:
                logger.error(f"Failed to create alert {change.type} for {cuit}: {e}")
        return generated

    def _needs_reschedule(self, job: PollingJob, interval: int) -> bool:
        threshold = self.settings.POLLING_INTERVAL_CHANGE_THRESHOLD_MINUTES
        return abs(interval - job.interval_minutes) > threshold

    async def adjust_polling_if_needed(self, cuit: str, new_interval: int) -> bool:
        """Replace the polling job when the interval moved past the threshold."""
        job = self.polling.get(cuit)
        if job is None or not self._needs_reschedule(job, new_interval):
            return False
        if self._is_disabled(cuit):
            return False

        replaced = self.polling.schedule(cuit, new_interval, self._scheduled_check)
        async with self.session_factory() as db:
            entity = await db.get(MonitoredEntity, cuit)
            if entity is not None:
                entity.polling_interval = new_interval
                entity.next_check = _to_naive_utc(replaced.next_run)
                await db.commit()

        logger.info(
            f"Polling interval for {cuit} changed {job.interval_minutes} -> {new_interval} min "
            f"({replaced.schedule})"
        )
        return True

    # =========================================================================
    # Entity management
    # =========================================================================

    async def add_entity_monitoring(
        self,
        cuit: str,
        config: Optional[Dict[str, Any]] = None,
    ) -> MonitoredEntity:
        """Create or refresh an entity row and schedule it unless disabled."""
        cuit = validate_cuit(cuit)
        config = config or {}

        async with self.session_factory() as db:
            entity = await db.get(MonitoredEntity, cuit)
            if entity is None:
                entity = MonitoredEntity(cuit=cuit, created_at=self.clock())
                db.add(entity)
            for key in ENTITY_CONFIG_FIELDS:
                if key in config:
                    setattr(entity, key, config[key])
            if "enabled" not in config:
                entity.enabled = True
            if entity.auto_polling is None:
                entity.auto_polling = True
            entity.updated_at = self.clock()
            await db.commit()

        with self._lock:
            if entity.enabled:
                self._disabled.discard(cuit)
            else:
                self._disabled.add(cuit)

        self.cache.delete(cuit)
        if entity.enabled and entity.auto_polling:
            await self.schedule_polling_for_entity(entity)
        else:
            self.polling.cancel(cuit)

        logger.info(f"Monitoring configured for {cuit} (enabled={entity.enabled}, auto_polling={entity.auto_polling})")
        return entity

    async def remove_entity_monitoring(self, cuit: str) -> bool:
        """
        Cancel polling and soft-disable the entity. Idempotent.

        Returns True when a job or an enabled row was actually removed.
        """
        with self._lock:
            self._disabled.add(cuit)

        cancelled = self.polling.cancel(cuit)
        self.cache.delete(cuit)

        async with self.session_factory() as db:
            entity = await db.get(MonitoredEntity, cuit)
            was_enabled = entity is not None and entity.enabled
            if was_enabled:
                entity.enabled = False
                entity.next_check = None
                entity.updated_at = self.clock()
                await db.commit()

        if cancelled or was_enabled:
            logger.info(f"Monitoring removed for {cuit}")
        return cancelled or was_enabled

    def _is_disabled(self, cuit: str) -> bool:
        with self._lock:
            return cuit in self._disabled

    async def check_compliance_manual(self, cuit: str) -> CheckResult:
        """
        On-demand check.

        Raises ValidationError for a malformed CUIT, PersistenceError when
        the result could not be stored and ComplianceCheckError when the
        check is skipped or fails otherwise.
        """
        cuit = validate_cuit(cuit)
        result = await self.perform_compliance_check(cuit, triggered_by="manual")

        if result.status == CHECK_FAILED:
            error_class = PersistenceError if result.error_code == PersistenceError.code else ComplianceCheckError
            raise error_class(
                f"Compliance check failed for {cuit}: {result.error}",
                details={"cuit": cuit, "source_code": result.error_code},
            ) from result.cause
        if result.status == CHECK_SKIPPED:
            raise ComplianceCheckError(
                f"Compliance check skipped for {cuit}: {result.reason}",
                code="COMPLIANCE_CHECK_SKIPPED",
                details={"cuit": cuit, "reason": result.reason},
            )
        return result

    # =========================================================================
    # Polling log and metrics
    # =========================================================================

    async def _start_polling_log(self, cuit: str, triggered_by: str) -> str:
        job = self.polling.get(cuit)
        async with self.session_factory() as db:
            entry = PollingLog(
                cuit=cuit,
                triggered_by=triggered_by,
                status=PollingLogStatus.STARTED.value,
                started_at=self.clock(),
                interval_used=job.interval_minutes if job else None,
            )
            db.add(entry)
            await db.commit()
            return entry.id

    async def _complete_polling_log(self, log_id: Optional[str], result: CheckResult) -> None:
        if log_id is None:
            return
        try:
            async with self.session_factory() as db:
                entry = await db.get(PollingLog, log_id)
                if entry is None:
                    return
                entry.status = PollingLogStatus.COMPLETED.value
                entry.completed_at = self.clock()
                entry.changes_detected = any(c["type"] != "first_check" for c in result.changes)
                entry.risk_score_after = result.risk_score
                entry.alerts_generated = result.alerts_generated
                entry.execution_time_ms = result.execution_time_ms
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to complete polling log for {result.cuit}: {e}")

    async def _fail_polling_log(
        self,
        log_id: Optional[str],
        cuit: str,
        error: str,
        elapsed_ms: int,
    ) -> None:
        try:
            async with self.session_factory() as db:
                entry = await db.get(PollingLog, log_id) if log_id else None
                if entry is None:
                    entry = PollingLog(cuit=cuit, started_at=self.clock())
                    db.add(entry)
                entry.status = PollingLogStatus.FAILED.value
                entry.completed_at = self.clock()
                entry.execution_time_ms = elapsed_ms
                entry.error_message = error
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to write polling error log for {cuit}: {e}")

    async def update_daily_metrics(self, day: Optional[date] = None) -> ComplianceMetric:
        """Roll up today's polling logs into compliance_metrics."""
        day = day or self.clock().date()
        start = datetime.combine(day, datetime.min.time())
        end = start + timedelta(days=1)

        async with self.session_factory() as db:
            rows = await db.execute(
                select(PollingLog.status, func.count(PollingLog.id), func.avg(PollingLog.execution_time_ms))
                .where(PollingLog.started_at >= start)
                .where(PollingLog.started_at < end)
                .group_by(PollingLog.status)
            )
            counts = {status: (count, avg) for status, count, avg in rows.all()}

            completed, avg_ms = counts.get(PollingLogStatus.COMPLETED.value, (0, None))
            failed, _ = counts.get(PollingLogStatus.FAILED.value, (0, None))
            total = sum(count for count, _ in counts.values())

            key = day.isoformat()
            metric = await db.get(ComplianceMetric, key)
            if metric is None:
                metric = ComplianceMetric(date=key)
                db.add(metric)
            metric.total_checks = total
            metric.successful_checks = completed
            metric.failed_checks = failed
            metric.avg_response_time_ms = float(avg_ms or 0.0)
            metric.updated_at = self.clock()
            await db.commit()

        logger.debug(f"Daily metrics for {key}: {total} checks, {completed} ok, {failed} failed")
        return metric

    def _count(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._metrics[key] += amount

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            metrics = dict(self._metrics)
        successful = metrics["successful_checks"]
        metrics["avg_response_time_ms"] = (
            metrics.pop("total_response_time_ms") / successful if successful else 0.0
        )
        metrics.update({
            "active_jobs": len(self.polling),
            "cache_size": len(self.cache),
            "circuit_breaker": self.breaker.get_status(),
            "is_running": self._running,
        })
        return metrics

    def get_polling_jobs(self) -> List[Dict[str, Any]]:
        return [job.to_dict() for job in self.polling.jobs()]


def _to_naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)
