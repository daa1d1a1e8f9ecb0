"""Tests for the AFIP client: mock mode, response mapping and retries."""

import httpx
import pytest

from afip_monitor.afip.client import AfipClient
from afip_monitor.config import Settings
from afip_monitor.errors import DataSourceError

CUIT = "30714567892"


@pytest.fixture
def live_settings():
    return Settings(
        _env_file=None,
        AFIP_MOCK_MODE=False,
        AFIP_BASE_URL="https://afip.test",
        AFIP_RETRY_ATTEMPTS=3,
        AFIP_RETRY_DELAY_SECONDS=0.0,
    )


def make_client(settings, handler):
    http_client = httpx.AsyncClient(
        base_url=settings.AFIP_BASE_URL,
        transport=httpx.MockTransport(handler),
    )
    return AfipClient(settings, http_client=http_client)


class TestMockMode:

    @pytest.mark.asyncio
    async def test_company_cuit(self, test_settings):
        client = AfipClient(test_settings)

        assert (await client.get_fiscal_status(CUIT))["active"] is True
        registration = await client.get_registration_status(CUIT)
        assert registration == {"registered": True, "category": "responsable_inscripto"}
        profile = await client.get_entity_profile(CUIT)
        assert profile["categories"] == ["iva", "ganancias"]
        assert profile["business_name"] == f"Contribuyente Mock {CUIT}"

    @pytest.mark.asyncio
    async def test_cuit_ending_in_nine_is_inactive(self, test_settings):
        client = AfipClient(test_settings)

        fiscal = await client.get_fiscal_status("27333333339")

        assert fiscal == {"active": False, "status": "inactivo"}


class TestLiveRequests:

    @pytest.mark.asyncio
    async def test_response_mapping(self, live_settings):
        def handler(request):
            path = request.url.path
            if path.endswith("/estado"):
                return httpx.Response(200, json={"estadoClave": "ACTIVO"})
            if path.endswith("/iva"):
                return httpx.Response(200, json={"inscripto": True, "categoria": "responsable_inscripto"})
            return httpx.Response(200, json={
                "razonSocial": "Acme S.A.",
                "impuestos": [{"descripcion": "iva"}, {"descripcion": "ganancias"}],
            })

        client = make_client(live_settings, handler)

        assert await client.get_fiscal_status(CUIT) == {"active": True, "status": "activo"}
        assert await client.get_registration_status(CUIT) == {
            "registered": True,
            "category": "responsable_inscripto",
        }
        profile = await client.get_entity_profile(CUIT)
        assert profile["business_name"] == "Acme S.A."
        assert profile["categories"] == ["iva", "ganancias"]
        assert client.get_status()["last_success"] is not None

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, live_settings):
        attempts = []

        def handler(request):
            attempts.append(request.url.path)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"estadoClave": "INACTIVO"})

        client = make_client(live_settings, handler)

        fiscal = await client.get_fiscal_status(CUIT)

        assert fiscal["active"] is False
        assert len(attempts) == 3
        assert attempts[0] == f"/padron/{CUIT}/estado"

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, live_settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        client = make_client(live_settings, handler)

        with pytest.raises(DataSourceError) as exc_info:
            await client.get_fiscal_status(CUIT)

        assert len(attempts) == 3
        assert exc_info.value.code == "AFIP_ERROR"
        assert exc_info.value.details["attempts"] == 3
        assert client.get_status()["consecutive_failures"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, code", [
        (404, "AFIP_NOT_FOUND"),
        (401, "AFIP_UNAUTHORIZED"),
        (400, "AFIP_ERROR"),
    ])
    async def test_client_errors_are_not_retried(self, live_settings, status, code):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(status)

        client = make_client(live_settings, handler)

        with pytest.raises(DataSourceError) as exc_info:
            await client.get_registration_status(CUIT)

        assert len(attempts) == 1
        assert exc_info.value.code == code
        assert exc_info.value.details["status"] == status
