"""Tests for compliance snapshots and change detection."""

from datetime import datetime

from afip_monitor.models.monitoring import ComplianceResult
from afip_monitor.monitoring.snapshot import (
    ComplianceSnapshot,
    detect_significant_changes,
)

CUIT = "20123456786"
TS = datetime(2024, 3, 12, 9, 0)


def make_snapshot(active=True, registered=True, profile=True, **kwargs):
    return ComplianceSnapshot(
        cuit=CUIT,
        timestamp=TS,
        fiscal_status={"active": active, "status": "activo" if active else "inactivo"} if active is not None else None,
        registration_status={"registered": registered, "category": "monotributo"} if registered is not None else None,
        taxpayer_profile={"business_name": "Perez Juan", "categories": ["monotributo"]} if profile else None,
        **kwargs,
    )


class TestComplianceSnapshot:

    def test_checks_only_include_present_sub_checks(self):
        snapshot = make_snapshot(registered=None, failed_checks=("registration_status",))
        assert set(snapshot.checks) == {"fiscal_status", "taxpayer_profile"}
        assert not snapshot.is_empty

    def test_snapshot_without_checks_is_empty(self):
        assert ComplianceSnapshot(cuit=CUIT, timestamp=TS).is_empty

    def test_from_result_row(self):
        stored = make_snapshot(registered=None, failed_checks=("registration_status",))
        row = ComplianceResult(
            cuit=CUIT,
            check_date=TS,
            data={**stored.to_dict(), "risk_score": 0.4, "alerts": []},
        )

        assert ComplianceSnapshot.from_result(row) == stored

    def test_from_result_fills_missing_identity(self):
        row = ComplianceResult(cuit=CUIT, check_date=TS, data={"checks": {"fiscal_status": {"active": False}}})

        restored = ComplianceSnapshot.from_result(row)

        assert restored.cuit == CUIT
        assert restored.timestamp == TS
        assert restored.fiscal_status == {"active": False}

    def test_dict_round_trip_keeps_failed_checks(self):
        snapshot = make_snapshot(profile=False, failed_checks=("taxpayer_profile",))
        restored = ComplianceSnapshot.from_dict(snapshot.to_dict())
        assert restored == snapshot


class TestDetectSignificantChanges:

    def test_first_check_without_previous(self):
        changes = detect_significant_changes(None, make_snapshot())
        assert len(changes) == 1
        assert changes[0].type == "first_check"
        assert changes[0].severity == "info"

    def test_no_changes(self):
        assert detect_significant_changes(make_snapshot(), make_snapshot()) == []

    def test_fiscal_status_becomes_inactive_is_high(self):
        changes = detect_significant_changes(make_snapshot(active=True), make_snapshot(active=False))
        assert len(changes) == 1
        change = changes[0]
        assert change.type == "fiscal_status_change"
        assert change.severity == "high"
        assert change.previous is True
        assert change.current is False
        assert "active to inactive" in change.description

    def test_fiscal_status_becomes_active_is_medium(self):
        changes = detect_significant_changes(make_snapshot(active=False), make_snapshot(active=True))
        assert [c.severity for c in changes] == ["medium"]

    def test_vat_registration_change_is_medium(self):
        changes = detect_significant_changes(make_snapshot(registered=True), make_snapshot(registered=False))
        assert len(changes) == 1
        assert changes[0].type == "vat_registration_change"
        assert changes[0].severity == "medium"

    def test_missing_current_sub_check_is_not_a_change(self):
        previous = make_snapshot(active=True, registered=True)
        current = make_snapshot(active=None, registered=None)
        assert detect_significant_changes(previous, current) == []

    def test_both_flags_changed(self):
        changes = detect_significant_changes(
            make_snapshot(active=True, registered=True),
            make_snapshot(active=False, registered=False),
        )
        assert {c.type for c in changes} == {"fiscal_status_change", "vat_registration_change"}
