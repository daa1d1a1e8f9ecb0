"""Compliance risk scoring."""
from .engine import (
    RiskScoringEngine,
    RiskFactors,
    RecalculationSummary,
    calculate_adjustment_factor,
    calculate_current_status,
    INDUSTRY_FACTORS,
    SIZE_FACTORS,
    WEIGHTS,
)

__all__ = [
    "RiskScoringEngine",
    "RiskFactors",
    "RecalculationSummary",
    "calculate_adjustment_factor",
    "calculate_current_status",
    "INDUSTRY_FACTORS",
    "SIZE_FACTORS",
    "WEIGHTS",
]
