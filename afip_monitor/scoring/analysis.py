"""
Pattern analysis helpers for the predictive and adjustment components.

Pure functions over score series; no database access.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from dateutil.relativedelta import relativedelta

TREND_IMPROVING = "improving"
TREND_DEGRADING = "degrading"
TREND_STABLE = "stable"

# Slope thresholds are in score points (0-100) per check
TREND_SLOPE_THRESHOLD = 1.0
MIN_TREND_POINTS = 3

SIZE_LARGE = "large"
SIZE_MEDIUM = "medium"
SIZE_SMALL = "small"
SIZE_UNKNOWN = "unknown"

LARGE_MARKERS = ("s.a.", "sociedad anonima", "corporation", "group")
MEDIUM_MARKERS = ("s.r.l.", "sociedad", "ltda", "empresa")

# (max days to deadline, proximity factor)
DEADLINE_PROXIMITY_BANDS: Tuple[Tuple[int, float], ...] = ((5, 0.9), (10, 0.6), (20, 0.3))
DEADLINE_PROXIMITY_FAR = 0.1


@dataclass
class Trend:
    direction: str
    strength: float
    slope: float = 0.0


def analyze_trend(scores: Sequence[float]) -> Trend:
    """
    Least-squares slope over an ordered score series.

    Fewer than 3 points is always stable. Strength is |slope| / 100 capped at 1.
    """
    n = len(scores)
    if n < MIN_TREND_POINTS:
        return Trend(direction=TREND_STABLE, strength=0.0)

    sum_x = sum(range(n))
    sum_y = sum(scores)
    sum_xy = sum(i * y for i, y in enumerate(scores))
    sum_xx = sum(i * i for i in range(n))

    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_xx - sum_x * sum_x)
    strength = min(1.0, abs(slope) / 100)

    if slope > TREND_SLOPE_THRESHOLD:
        direction = TREND_IMPROVING
    elif slope < -TREND_SLOPE_THRESHOLD:
        direction = TREND_DEGRADING
    else:
        direction = TREND_STABLE

    return Trend(direction=direction, strength=strength, slope=slope)


def analyze_seasonality(points: Sequence[Tuple[datetime, float]], month: int) -> float:
    """
    (average for `month` - overall average) / 100.

    Returns 0 when there are no points for that calendar month.
    """
    if not points:
        return 0.0

    by_month: Dict[int, List[float]] = {}
    for check_date, score in points:
        by_month.setdefault(check_date.month, []).append(score)

    month_scores = by_month.get(month)
    if not month_scores:
        return 0.0

    month_avg = sum(month_scores) / len(month_scores)
    overall_avg = sum(score for _, score in points) / len(points)
    return (month_avg - overall_avg) / 100


def end_of_month(now: datetime) -> datetime:
    """Default filing deadline: the last day of the current month."""
    first_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return first_of_month + relativedelta(months=1, days=-1)


def deadline_proximity(now: datetime, deadline: Optional[datetime]) -> float:
    """Risk factor for how close the next deadline is (closer = higher)."""
    if deadline is None:
        return DEADLINE_PROXIMITY_FAR
    days = (deadline.date() - now.date()).days
    for max_days, factor in DEADLINE_PROXIMITY_BANDS:
        if days <= max_days:
            return factor
    return DEADLINE_PROXIMITY_FAR


def estimate_company_size(business_name: Optional[str]) -> str:
    """Rough size bucket from legal-form markers in the business name."""
    if not business_name:
        return SIZE_UNKNOWN
    name = business_name.lower()
    if any(marker in name for marker in LARGE_MARKERS):
        return SIZE_LARGE
    if any(marker in name for marker in MEDIUM_MARKERS):
        return SIZE_MEDIUM
    return SIZE_SMALL
