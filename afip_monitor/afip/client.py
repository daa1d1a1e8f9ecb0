"""
AFIP Client

Compliance data source used by the monitor. Each sub-check is an independent
HTTP call; the client retries transient failures (timeouts, connection
errors, 429 and 5xx) with exponential backoff and raises DataSourceError
once retries are exhausted.

Mock mode returns deterministic data derived from the CUIT so the monitor
can run end-to-end without AFIP credentials.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from afip_monitor.config import Settings, settings as default_settings
from afip_monitor.errors import DataSourceError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class ComplianceDataSource(ABC):
    """Interface the ComplianceMonitor consumes."""

    @abstractmethod
    async def get_fiscal_status(self, cuit: str) -> Dict[str, Any]:
        """Return {"active": bool, ...}."""
        pass

    @abstractmethod
    async def get_registration_status(self, cuit: str) -> Dict[str, Any]:
        """Return {"registered": bool, "category": str, ...}."""
        pass

    @abstractmethod
    async def get_entity_profile(self, cuit: str) -> Dict[str, Any]:
        """Return {"categories": [...], "business_name": str, ...}."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Health signal: False while the source is failing."""
        pass


class AfipClient(ComplianceDataSource):
    """HTTP client for the AFIP padrón services."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or default_settings
        self.base_url = self.settings.AFIP_BASE_URL.rstrip("/")
        self.mock_mode = self.settings.AFIP_MOCK_MODE
        self.retry_attempts = max(1, self.settings.AFIP_RETRY_ATTEMPTS)
        self.retry_delay = self.settings.AFIP_RETRY_DELAY_SECONDS
        self._client = http_client
        self._owns_client = http_client is None
        self._consecutive_failures = 0
        self._last_success: Optional[datetime] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.settings.AFIP_TIMEOUT_SECONDS,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def is_available(self) -> bool:
        return self._consecutive_failures < self.retry_attempts

    def get_status(self) -> Dict[str, Any]:
        return {
            "available": self.is_available(),
            "mock_mode": self.mock_mode,
            "consecutive_failures": self._consecutive_failures,
            "last_success": self._last_success.isoformat() if self._last_success else None,
        }

    # =========================================================================
    # Sub-checks
    # =========================================================================

    async def get_fiscal_status(self, cuit: str) -> Dict[str, Any]:
        if self.mock_mode:
            return _mock_fiscal_status(cuit)
        data = await self._request(f"/padron/{cuit}/estado")
        status = str(data.get("estadoClave") or data.get("status") or "").upper()
        return {
            "active": status in ("ACTIVO", "ACTIVE"),
            "status": status.lower() or None,
        }

    async def get_registration_status(self, cuit: str) -> Dict[str, Any]:
        if self.mock_mode:
            return _mock_registration_status(cuit)
        data = await self._request(f"/padron/{cuit}/iva")
        return {
            "registered": bool(data.get("inscripto", data.get("registered", False))),
            "category": data.get("categoria") or data.get("category"),
        }

    async def get_entity_profile(self, cuit: str) -> Dict[str, Any]:
        if self.mock_mode:
            return _mock_entity_profile(cuit)
        data = await self._request(f"/padron/{cuit}")
        taxes = data.get("impuestos") or data.get("categories") or []
        return {
            "business_name": data.get("razonSocial") or data.get("business_name"),
            "categories": [t.get("descripcion", t) if isinstance(t, dict) else t for t in taxes],
            "address": data.get("domicilioFiscal") or data.get("address"),
        }

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request(self, path: str) -> Dict[str, Any]:
        """GET with retry and exponential backoff."""
        client = await self._get_client()
        last_error: Optional[str] = None

        for attempt in range(self.retry_attempts):
            try:
                response = await client.get(path)
                if response.status_code == 200:
                    self._consecutive_failures = 0
                    self._last_success = datetime.now(timezone.utc)
                    return response.json()

                last_error = f"AFIP API error: {response.status_code}"
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    self._consecutive_failures += 1
                    raise DataSourceError(
                        last_error,
                        code=_error_code_for_status(response.status_code),
                        details={"path": path, "status": response.status_code},
                    )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = f"{type(e).__name__}: {e}"

            if attempt < self.retry_attempts - 1:
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(f"AFIP request {path} failed ({last_error}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

        self._consecutive_failures += 1
        raise DataSourceError(
            f"AFIP request {path} failed after {self.retry_attempts} attempts: {last_error}",
            details={"path": path, "attempts": self.retry_attempts},
        )


def _error_code_for_status(status_code: int) -> str:
    if status_code == 401:
        return "AFIP_UNAUTHORIZED"
    if status_code == 404:
        return "AFIP_NOT_FOUND"
    return "AFIP_ERROR"


# =============================================================================
# Mock data
# =============================================================================

def _mock_fiscal_status(cuit: str) -> Dict[str, Any]:
    # Last digit 9 simulates an inactive taxpayer
    active = not cuit.endswith("9")
    return {"active": active, "status": "activo" if active else "inactivo"}


def _mock_registration_status(cuit: str) -> Dict[str, Any]:
    if cuit.startswith("30"):
        return {"registered": True, "category": "responsable_inscripto"}
    return {"registered": True, "category": "monotributo"}


def _mock_entity_profile(cuit: str) -> Dict[str, Any]:
    categories = ["iva", "ganancias"] if cuit.startswith("30") else ["monotributo"]
    return {
        "business_name": f"Contribuyente Mock {cuit}",
        "categories": categories,
        "address": None,
    }
