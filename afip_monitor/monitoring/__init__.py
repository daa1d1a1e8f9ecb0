"""
Compliance monitoring.

- monitor.py: ComplianceMonitor orchestrating the check cycle
- polling.py: risk-based intervals and the per-CUIT job registry
- circuit_breaker.py / cache.py: guards around the external source
- snapshot.py: snapshots and change detection
"""
from .cache import TTLCache
from .circuit_breaker import CircuitBreaker
from .monitor import CheckResult, ComplianceMonitor
from .polling import (
    PollingJob,
    PollingRegistry,
    calculate_polling_interval,
    describe_schedule,
    determine_status,
)
from .snapshot import ComplianceSnapshot, DetectedChange, detect_significant_changes

__all__ = [
    "TTLCache",
    "CircuitBreaker",
    "CheckResult",
    "ComplianceMonitor",
    "PollingJob",
    "PollingRegistry",
    "calculate_polling_interval",
    "describe_schedule",
    "determine_status",
    "ComplianceSnapshot",
    "DetectedChange",
    "detect_significant_changes",
]
