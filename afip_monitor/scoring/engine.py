"""
Risk Scoring Engine

Blends three components into a compliance risk score in [0, 1]:
- Historic compliance (40%): last 12 months of recorded results
- Current AFIP status (35%): the snapshot fetched this cycle
- Predictive patterns (25%): trend, seasonality and deadline proximity

The blend is multiplied by an industry/size adjustment factor clamped to
[0.7, 1.3], then clamped again to [0, 1]. Each calculation is persisted as
a RiskFactorSet row.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select

from afip_monitor.config import Settings, settings as default_settings
from afip_monitor.database import SessionFactory
from afip_monitor.models.base import utcnow
from afip_monitor.models.monitoring import ComplianceResult, MonitoredEntity, RiskFactorSet
from afip_monitor.monitoring.polling import determine_status
from afip_monitor.monitoring.snapshot import ComplianceSnapshot

from .analysis import (
    SIZE_LARGE,
    SIZE_MEDIUM,
    SIZE_SMALL,
    SIZE_UNKNOWN,
    TREND_DEGRADING,
    TREND_IMPROVING,
    analyze_seasonality,
    analyze_trend,
    deadline_proximity,
    end_of_month,
    estimate_company_size,
)

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.50

WEIGHTS = {
    "historic": 0.40,
    "current": 0.35,
    "predictive": 0.25,
}

INDUSTRY_FACTORS = {
    "Comercio": 1.0,
    "Servicios": 1.1,
    "Industria": 0.9,
    "Construcción": 1.2,
    "Agropecuario": 1.0,
    "default": 1.0,
}

SIZE_FACTORS = {
    SIZE_SMALL: 1.1,
    SIZE_MEDIUM: 1.0,
    SIZE_LARGE: 0.9,
    SIZE_UNKNOWN: 1.0,
}

ADJUSTMENT_MIN = 0.7
ADJUSTMENT_MAX = 1.3

MISSED_DEADLINE_TYPES = frozenset({"missing_vat_declarations", "missing_income_tax_declarations"})
LATE_CORRECTION_TYPES = frozenset({"late_tax_returns"})
MISSED_DEADLINE_PENALTY = 0.3
LATE_CORRECTION_PENALTY = 0.2

MIN_PREDICTIVE_POINTS = 2


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(high, max(low, value))


@dataclass
class RiskFactors:
    """One calculation's components."""
    historic_compliance: float
    current_status: float
    predictive_patterns: float
    adjustment_factor: float
    final_score: float
    weights: Dict[str, float] = field(default_factory=lambda: dict(WEIGHTS))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "historic_compliance": self.historic_compliance,
            "current_status": self.current_status,
            "predictive_patterns": self.predictive_patterns,
            "adjustment_factor": self.adjustment_factor,
            "final_score": self.final_score,
            "weights": self.weights,
        }


@dataclass
class RecalculationSummary:
    """Outcome of a batch recalculation."""
    processed: int = 0
    errors: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "errors": self.errors,
            "failures": self.failures,
        }


def calculate_current_status(snapshot: Optional[ComplianceSnapshot]) -> float:
    """Average of the present sub-check scores, 0.5 when nothing is present."""
    if snapshot is None or snapshot.is_empty:
        return NEUTRAL_SCORE

    total = 0.0
    checks = 0

    if snapshot.fiscal_status is not None:
        total += 1.0 if snapshot.fiscal_status.get("active") else 0.0
        checks += 1

    if snapshot.registration_status is not None:
        registration = snapshot.registration_status
        if registration.get("registered"):
            total += 0.8
            if registration.get("category") == "responsable_inscripto":
                total += 0.2
        checks += 1

    if snapshot.taxpayer_profile is not None:
        categories = snapshot.taxpayer_profile.get("categories") or []
        if len(categories) > 0:
            total += 0.6
            if len(categories) > 1:
                total += 0.2
        checks += 1

    return clamp(total / checks)


def calculate_adjustment_factor(category: Optional[str], business_name: Optional[str]) -> float:
    industry = INDUSTRY_FACTORS.get(category, INDUSTRY_FACTORS["default"]) if category else 1.0
    size = SIZE_FACTORS[estimate_company_size(business_name)]
    return clamp(industry * size, ADJUSTMENT_MIN, ADJUSTMENT_MAX)


class RiskScoringEngine:
    """
    Computes and records risk scores per CUIT.

    Usage:
        engine = RiskScoringEngine(session_factory)
        score = await engine.calculate_risk_score("20123456786", snapshot)
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        deadline_provider: Callable[[datetime], Optional[datetime]] = end_of_month,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.clock = clock
        self.deadline_provider = deadline_provider

    # =========================================================================
    # Components
    # =========================================================================

    async def calculate_historic_compliance(self, cuit: str) -> float:
        since = self.clock() - relativedelta(months=self.settings.HISTORY_MONTHS)
        async with self.session_factory() as db:
            result = await db.execute(
                select(ComplianceResult)
                .where(ComplianceResult.cuit == cuit)
                .where(ComplianceResult.check_date >= since)
                .order_by(ComplianceResult.check_date.desc())
            )
            history = result.scalars().all()

        if not history:
            return NEUTRAL_SCORE

        total_score = 0.0
        missed = 0
        corrections = 0
        for record in history:
            total_score += record.score or 0
            for alert in (record.data or {}).get("alerts") or []:
                alert_type = alert.get("type") if isinstance(alert, dict) else None
                if alert_type in MISSED_DEADLINE_TYPES:
                    missed += 1
                elif alert_type in LATE_CORRECTION_TYPES:
                    corrections += 1

        count = len(history)
        score = total_score / count / 100
        score -= (missed / count) * MISSED_DEADLINE_PENALTY
        score -= (corrections / count) * LATE_CORRECTION_PENALTY
        return clamp(score)

    async def calculate_predictive_patterns(self, cuit: str) -> float:
        now = self.clock()
        since = now - relativedelta(months=self.settings.PREDICTIVE_MONTHS)
        async with self.session_factory() as db:
            result = await db.execute(
                select(ComplianceResult.check_date, ComplianceResult.score)
                .where(ComplianceResult.cuit == cuit)
                .where(ComplianceResult.check_date >= since)
                .order_by(ComplianceResult.check_date.asc())
            )
            points = [(row.check_date, row.score or 0) for row in result.all()]

        if len(points) < MIN_PREDICTIVE_POINTS:
            return NEUTRAL_SCORE

        trend = analyze_trend([score for _, score in points])
        seasonality = analyze_seasonality(points, now.month)
        proximity = deadline_proximity(now, self.deadline_provider(now))

        score = NEUTRAL_SCORE
        if trend.direction == TREND_IMPROVING:
            score += 0.2 * trend.strength
        elif trend.direction == TREND_DEGRADING:
            score -= 0.3 * trend.strength

        # Seasonality is blended unclamped; the final clamp bounds it
        score += seasonality
        score -= proximity * 0.2
        return clamp(score)

    async def calculate_adjustment(
        self,
        cuit: str,
        snapshot: Optional[ComplianceSnapshot] = None,
    ) -> float:
        async with self.session_factory() as db:
            entity = await db.get(MonitoredEntity, cuit)

        category = entity.category if entity else None
        business_name = entity.business_name if entity else None
        if not business_name and snapshot is not None and snapshot.taxpayer_profile:
            business_name = snapshot.taxpayer_profile.get("business_name")
        return calculate_adjustment_factor(category, business_name)

    # =========================================================================
    # Public API
    # =========================================================================

    async def calculate_risk_factors(
        self,
        cuit: str,
        snapshot: Optional[ComplianceSnapshot] = None,
    ) -> RiskFactors:
        """Compute every component and persist the result. May raise."""
        historic = await self.calculate_historic_compliance(cuit)
        current = calculate_current_status(snapshot)
        predictive = await self.calculate_predictive_patterns(cuit)
        adjustment = await self.calculate_adjustment(cuit, snapshot)

        base = (
            historic * WEIGHTS["historic"]
            + current * WEIGHTS["current"]
            + predictive * WEIGHTS["predictive"]
        )
        factors = RiskFactors(
            historic_compliance=historic,
            current_status=current,
            predictive_patterns=predictive,
            adjustment_factor=adjustment,
            final_score=clamp(base * adjustment),
        )

        async with self.session_factory() as db:
            db.add(RiskFactorSet(
                cuit=cuit,
                historic_compliance=factors.historic_compliance,
                current_status=factors.current_status,
                predictive_patterns=factors.predictive_patterns,
                adjustment_factor=factors.adjustment_factor,
                final_score=factors.final_score,
                weights=factors.weights,
                created_at=self.clock(),
            ))
            await db.commit()

        return factors

    async def calculate_risk_score(
        self,
        cuit: str,
        snapshot: Optional[ComplianceSnapshot] = None,
    ) -> float:
        """
        Risk score in [0, 1] for a CUIT.

        Never raises: any internal failure is logged and the neutral 0.5 is
        returned.
        """
        try:
            factors = await self.calculate_risk_factors(cuit, snapshot)
        except Exception as e:
            logger.error(f"Risk score calculation failed for {cuit}: {e}")
            return NEUTRAL_SCORE

        logger.debug(
            f"Risk score for {cuit}: {factors.final_score:.3f} "
            f"(historic={factors.historic_compliance:.2f}, current={factors.current_status:.2f}, "
            f"predictive={factors.predictive_patterns:.2f}, adjustment={factors.adjustment_factor:.2f})"
        )
        return factors.final_score

    async def get_latest_snapshot(self, cuit: str) -> Optional[ComplianceSnapshot]:
        """Snapshot stored with the most recent check, None before the first one."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(ComplianceResult)
                .where(ComplianceResult.cuit == cuit)
                .order_by(ComplianceResult.check_date.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()

        return ComplianceSnapshot.from_result(row) if row is not None else None

    async def recalculate_all(self) -> RecalculationSummary:
        """
        Recompute the score of every enabled entity.

        Per-entity failures are accumulated in the summary; the batch always
        runs to completion.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(MonitoredEntity.cuit).where(MonitoredEntity.enabled.is_(True))
            )
            cuits = [row[0] for row in result.all()]

        summary = RecalculationSummary()
        for cuit in cuits:
            try:
                snapshot = await self.get_latest_snapshot(cuit)
                factors = await self.calculate_risk_factors(cuit, snapshot)
                async with self.session_factory() as db:
                    entity = await db.get(MonitoredEntity, cuit)
                    if entity is not None:
                        entity.risk_score = factors.final_score
                        entity.status = determine_status(factors.final_score).value
                        entity.updated_at = self.clock()
                        await db.commit()
                summary.processed += 1
            except Exception as e:
                logger.error(f"Risk recalculation failed for {cuit}: {e}")
                summary.errors += 1
                summary.failures.append({"cuit": cuit, "error": str(e)})

        logger.info(
            f"Risk recalculation complete: {summary.processed} processed, {summary.errors} errors"
        )
        return summary

    async def get_risk_score_history(self, cuit: str, days: int = 30) -> List[Dict[str, Any]]:
        """Recorded scores for a CUIT within the last `days`, oldest first."""
        since = self.clock() - timedelta(days=days)
        async with self.session_factory() as db:
            result = await db.execute(
                select(RiskFactorSet)
                .where(RiskFactorSet.cuit == cuit)
                .where(RiskFactorSet.created_at >= since)
                .order_by(RiskFactorSet.created_at.asc())
            )
            rows = result.scalars().all()

        return [
            {
                "final_score": row.final_score,
                "historic_compliance": row.historic_compliance,
                "current_status": row.current_status,
                "predictive_patterns": row.predictive_patterns,
                "adjustment_factor": row.adjustment_factor,
                "created_at": row.created_at.isoformat(),
            }
            for row in rows
        ]

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "weights": dict(WEIGHTS),
            "industry_factors": dict(INDUSTRY_FACTORS),
            "size_factors": dict(SIZE_FACTORS),
            "adjustment_range": [ADJUSTMENT_MIN, ADJUSTMENT_MAX],
            "history_months": self.settings.HISTORY_MONTHS,
            "predictive_months": self.settings.PREDICTIVE_MONTHS,
        }
