"""Tests for the service wiring and the one-off commands."""

import json

import pytest
import pytest_asyncio

from afip_monitor.config import Settings
from afip_monitor.runner import build_app, run_check, run_cleanup, run_recalculate, setup_maintenance_jobs


@pytest_asyncio.fixture
async def app(tmp_path):
    settings = Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'runner.db'}",
        TIMEZONE="UTC",
        AFIP_MOCK_MODE=True,
    )
    app = build_app(settings)
    yield app
    await app.close()


class TestCommands:

    @pytest.mark.asyncio
    async def test_check_prints_result(self, app, capsys):
        code = await run_check(app, "30-71456789-2")

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["cuit"] == "30714567892"
        assert output["status"] == "completed"
        assert output["triggered_by"] == "manual"

    @pytest.mark.asyncio
    async def test_check_invalid_cuit(self, app, capsys):
        code = await run_check(app, "20123456780")

        assert code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["error"]["code"] == "INVALID_CUIT"

    @pytest.mark.asyncio
    async def test_recalculate_with_no_entities(self, app, capsys):
        assert await run_recalculate(app) == 0
        assert json.loads(capsys.readouterr().out)["processed"] == 0

    @pytest.mark.asyncio
    async def test_cleanup(self, app, capsys):
        assert await run_cleanup(app) == 0
        assert json.loads(capsys.readouterr().out) == {"alerts_removed": 0, "escalations_removed": 0}


class TestWiring:

    @pytest.mark.asyncio
    async def test_maintenance_jobs(self, app):
        app.scheduler.start(paused=True)

        setup_maintenance_jobs(app)

        job_ids = {job.id for job in app.scheduler.get_jobs()}
        assert {"escalation_cleanup", "alert_cleanup"} <= job_ids

    @pytest.mark.asyncio
    async def test_components_share_the_scheduler(self, app):
        assert app.monitor.scheduler is app.scheduler
        assert app.escalation_engine.scheduler is app.scheduler
        assert app.alert_manager.escalation_engine is app.escalation_engine
