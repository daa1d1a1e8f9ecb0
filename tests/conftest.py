"""Shared test fixtures for the compliance monitor tests."""
from datetime import datetime, timedelta
from typing import Any, Dict, Set

import pytest
import pytest_asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from afip_monitor.afip.client import ComplianceDataSource
from afip_monitor.config import Settings
from afip_monitor.database import create_engine_and_sessionmaker, init_db
from afip_monitor.errors import DataSourceError

# Valid check digits
CUIT_PERSON = "20123456786"
CUIT_COMPANY = "30714567892"
CUIT_OTHER = "27333333339"

# Tuesday
TUESDAY_9AM = datetime(2024, 3, 12, 9, 0)


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime = TUESDAY_9AM):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeDataSource(ComplianceDataSource):
    """In-memory data source; sub-checks named in `failing` raise."""

    def __init__(self):
        self.fiscal: Dict[str, Any] = {"active": True, "status": "activo"}
        self.registration: Dict[str, Any] = {"registered": True, "category": "responsable_inscripto"}
        self.profile: Dict[str, Any] = {
            "business_name": "Servicios Integrales",
            "categories": ["iva", "ganancias"],
            "address": None,
        }
        self.failing: Set[str] = set()
        self.calls = 0

    def fail_all(self) -> None:
        self.failing = {"fiscal_status", "registration_status", "taxpayer_profile"}

    def _result(self, name: str, value: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        if name in self.failing:
            raise DataSourceError(f"{name} unavailable")
        return dict(value)

    async def get_fiscal_status(self, cuit: str) -> Dict[str, Any]:
        return self._result("fiscal_status", self.fiscal)

    async def get_registration_status(self, cuit: str) -> Dict[str, Any]:
        return self._result("registration_status", self.registration)

    async def get_entity_profile(self, cuit: str) -> Dict[str, Any]:
        return self._result("taxpayer_profile", self.profile)

    def is_available(self) -> bool:
        return not self.failing


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        TIMEZONE="UTC",
        AFIP_MOCK_MODE=True,
        AFIP_RETRY_DELAY_SECONDS=0.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_source() -> FakeDataSource:
    return FakeDataSource()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite database, one per test."""
    engine, factory = create_engine_and_sessionmaker(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def scheduler():
    """Running but paused scheduler: jobs are stored, never fired."""
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.start(paused=True)
    yield scheduler
    scheduler.shutdown(wait=False)
