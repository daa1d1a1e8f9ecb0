"""
Error taxonomy for the compliance monitor.

Categories:
1. Validation errors - malformed alert data, invalid CUIT format
2. Not found - unknown alert or entity ids
3. Data source errors - AFIP timeouts / 5xx after the client's retries
4. Persistence errors - database failures surfaced to the caller
5. Compliance check errors - a manual check that could not complete

Every error carries a stable code and a message so callers of manual
operations receive a structured payload via to_dict().
"""

from typing import Any, Dict, Optional


class MonitorError(Exception):
    """Base error with a machine-readable code."""

    code = "MONITOR_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(MonitorError):
    """Input rejected synchronously."""
    code = "VALIDATION_ERROR"


class NotFoundError(MonitorError):
    code = "NOT_FOUND"


class DataSourceError(MonitorError):
    """The external compliance source failed after retries."""
    code = "AFIP_ERROR"


class PersistenceError(MonitorError):
    code = "PERSISTENCE_ERROR"


class ComplianceCheckError(MonitorError):
    """A manually requested check failed or was skipped."""
    code = "COMPLIANCE_CHECK_FAILED"
