"""AFIP compliance data source."""
from .client import AfipClient, ComplianceDataSource

__all__ = ["AfipClient", "ComplianceDataSource"]
