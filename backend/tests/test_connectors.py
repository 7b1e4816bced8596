import httpx
import pytest

from fieldsync.connectors.base import PullPage, RejectedRequestError, TransientConnectorError
from fieldsync.connectors.connectivity import ConnectivityMonitor, HttpHealthProbe
from fieldsync.connectors.http_connector import HttpSyncConnector
from fieldsync.schemas.sync import NetworkStatus

from conftest import CLIENTS


def make_connector(handler) -> HttpSyncConnector:
    connector = HttpSyncConnector({
        "base_url": "https://api.example.com/",
        "api_token": "token-123",
        "technician_id": "tech-9",
    })
    connector.client = httpx.AsyncClient(base_url=connector.base_url, transport=httpx.MockTransport(handler))
    return connector


class TestPullPage:
    def test_items_shape(self):
        page = PullPage.from_response({"items": [{"id": 1}], "hasMore": True, "total": 10, "nextCursor": "abc"})
        assert page.items == [{"id": 1}]
        assert page.has_more is True
        assert page.next_cursor == "abc"

    def test_legacy_data_shape(self):
        page = PullPage.from_response({"data": [{"id": 1}], "cursor": "c2"})
        assert page.items == [{"id": 1}]
        assert page.has_more is False
        assert page.next_cursor == "c2"


class TestHttpSyncConnector:
    @pytest.mark.asyncio
    async def test_fetch_page_sends_auth_and_params(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["technician"] = request.headers["X-Technician-Id"]
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"items": [{"id": "1"}], "hasMore": False})

        connector = make_connector(handler)
        page = await connector.fetch_page(CLIENTS, cursor="c1", since="2026-01-01T00:00:00")
        await connector.close()

        assert page.items == [{"id": "1"}]
        assert seen["auth"] == "Bearer token-123"
        assert seen["technician"] == "tech-9"
        assert seen["params"] == {"limit": "50", "scope": "all", "cursor": "c1", "since": "2026-01-01T00:00:00"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_retryable_statuses_are_transient(self, status_code):
        connector = make_connector(lambda request: httpx.Response(status_code, text="busy"))
        with pytest.raises(TransientConnectorError):
            await connector.fetch_page(CLIENTS)
        await connector.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 401, 403, 422])
    async def test_client_errors_are_rejections(self, status_code):
        connector = make_connector(lambda request: httpx.Response(status_code, text="nope"))
        with pytest.raises(RejectedRequestError) as exc_info:
            await connector.push_mutations(CLIENTS, {"mutations": []})
        assert exc_info.value.status_code == status_code
        await connector.close()

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        connector = make_connector(handler)
        with pytest.raises(TransientConnectorError):
            await connector.fetch_page(CLIENTS)
        await connector.close()

    @pytest.mark.asyncio
    async def test_fetch_record_missing_returns_none(self):
        connector = make_connector(lambda request: httpx.Response(404, text="gone"))
        assert await connector.fetch_record(CLIENTS, "42") is None
        await connector.close()

    @pytest.mark.asyncio
    async def test_fetch_record_unwraps_item(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/sync/clients/42"
            return httpx.Response(200, json={"item": {"id": "42"}})

        connector = make_connector(handler)
        assert await connector.fetch_record(CLIENTS, "42") == {"id": "42"}
        await connector.close()

    @pytest.mark.asyncio
    async def test_validate_connection(self):
        connector = make_connector(lambda request: httpx.Response(200, json={"status": "ok"}))
        assert await connector.validate_connection() is True
        await connector.close()

        connector = make_connector(lambda request: httpx.Response(503))
        assert await connector.validate_connection() is False
        await connector.close()


class TestConnectivityMonitor:
    def test_listeners_only_see_transitions(self):
        monitor = ConnectivityMonitor()
        changes = []
        monitor.subscribe(lambda prev, cur: changes.append((prev.is_connected, cur.is_connected)))

        monitor.set_status(True, "wifi")
        monitor.set_status(False, "none")
        monitor.set_status(False, "none")
        monitor.set_status(True, "cellular")

        assert changes == [(True, False), (False, True)]
        assert monitor.current.type == "cellular"

    @pytest.mark.asyncio
    async def test_fetch_uses_probe(self):
        async def probe():
            return NetworkStatus(is_connected=False, type="none")

        monitor = ConnectivityMonitor(probe=probe)
        status = await monitor.fetch()
        assert status.is_connected is False
        assert monitor.current.is_connected is False

    @pytest.mark.asyncio
    async def test_health_probe(self):
        probe = HttpHealthProbe("https://api.example.com")
        probe.client = httpx.AsyncClient(
            base_url="https://api.example.com",
            transport=httpx.MockTransport(lambda request: httpx.Response(200)),
        )
        assert (await probe()).is_connected is True
        await probe.close()
