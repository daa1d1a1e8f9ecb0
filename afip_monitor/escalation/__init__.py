"""Alert escalation."""
from .business_hours import WorkingHours
from .engine import EscalationEngine, EscalationOutcome

__all__ = [
    "WorkingHours",
    "EscalationEngine",
    "EscalationOutcome",
]
