"""
Compliance snapshots and change detection.

A snapshot bundles the sub-check results fetched in one cycle. A sub-check
that failed is absent (None), never a placeholder.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

FISCAL_STATUS = "fiscal_status"
REGISTRATION_STATUS = "registration_status"
TAXPAYER_PROFILE = "taxpayer_profile"

CHECK_NAMES = (FISCAL_STATUS, REGISTRATION_STATUS, TAXPAYER_PROFILE)


@dataclass(frozen=True)
class ComplianceSnapshot:
    """Point-in-time compliance data for one CUIT."""
    cuit: str
    timestamp: datetime
    fiscal_status: Optional[Dict[str, Any]] = None
    registration_status: Optional[Dict[str, Any]] = None
    taxpayer_profile: Optional[Dict[str, Any]] = None
    failed_checks: tuple = ()

    @property
    def checks(self) -> Dict[str, Dict[str, Any]]:
        """Only the sub-checks that are present."""
        present = {}
        for name in CHECK_NAMES:
            value = getattr(self, name)
            if value is not None:
                present[name] = value
        return present

    @property
    def is_empty(self) -> bool:
        return not self.checks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cuit": self.cuit,
            "timestamp": self.timestamp.isoformat(),
            "checks": self.checks,
            "failed_checks": list(self.failed_checks),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComplianceSnapshot":
        checks = data.get("checks") or {}
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            cuit=data.get("cuit", ""),
            timestamp=timestamp or datetime.min,
            fiscal_status=checks.get(FISCAL_STATUS),
            registration_status=checks.get(REGISTRATION_STATUS),
            taxpayer_profile=checks.get(TAXPAYER_PROFILE),
            failed_checks=tuple(data.get("failed_checks") or ()),
        )

    @classmethod
    def from_result(cls, row) -> "ComplianceSnapshot":
        """Rebuild the snapshot stored on a ComplianceResult row."""
        data = dict(row.data or {})
        data.setdefault("cuit", row.cuit)
        data.setdefault("timestamp", row.check_date)
        return cls.from_dict(data)


@dataclass
class DetectedChange:
    """A difference between two snapshots worth reporting."""
    type: str
    description: str
    severity: str  # info / low / medium / high / critical
    previous: Any = None
    current: Any = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "severity": self.severity,
            "previous": self.previous,
            "current": self.current,
            **({"details": self.details} if self.details else {}),
        }


def _field(check: Optional[Dict[str, Any]], key: str) -> Any:
    return check.get(key) if check else None


def detect_significant_changes(
    previous: Optional[ComplianceSnapshot],
    current: ComplianceSnapshot,
) -> List[DetectedChange]:
    """
    Compare the fiscal-active and VAT-registered flags of two snapshots.

    No previous snapshot yields a single informational `first_check` change.
    A sub-check missing from the current snapshot is not treated as a change.
    """
    if previous is None:
        return [DetectedChange(
            type="first_check",
            description="First compliance check for this CUIT",
            severity="info",
        )]

    changes: List[DetectedChange] = []

    if current.fiscal_status is not None:
        was_active = _field(previous.fiscal_status, "active")
        is_active = _field(current.fiscal_status, "active")
        if was_active != is_active:
            changes.append(DetectedChange(
                type="fiscal_status_change",
                description=f"Fiscal status changed from {_label(was_active, 'active', 'inactive')} "
                            f"to {_label(is_active, 'active', 'inactive')}",
                severity="medium" if is_active else "high",
                previous=was_active,
                current=is_active,
            ))

    if current.registration_status is not None:
        was_registered = _field(previous.registration_status, "registered")
        is_registered = _field(current.registration_status, "registered")
        if was_registered != is_registered:
            changes.append(DetectedChange(
                type="vat_registration_change",
                description=f"VAT registration changed from {_label(was_registered, 'registered', 'unregistered')} "
                            f"to {_label(is_registered, 'registered', 'unregistered')}",
                severity="medium",
                previous=was_registered,
                current=is_registered,
            ))

    return changes


def _label(value: Any, true_label: str, false_label: str) -> str:
    if value is None:
        return "unknown"
    return true_label if value else false_label
