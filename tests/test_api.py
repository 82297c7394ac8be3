"""
API tests for upskeeper.

The app is driven in-process: the lifespan is entered explicitly and
requests go through httpx's ASGI transport.
"""

import asyncio

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from upskeeper.app import create_app
from upskeeper.core.runtime import AgentRuntime
from upskeeper.nut.models import ConnectionState


async def wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def runtime(settings, mock_os_adapter):
    return AgentRuntime(settings, os_adapter=mock_os_adapter, init_sample_delay_ms=0, initial_reconnect_delay_ms=50)


@pytest_asyncio.fixture
async def client(runtime):
    app = create_app(runtime)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
            yield http


class TestSettingsAPI:

    @pytest.mark.asyncio
    async def test_get_settings(self, client):
        response = await client.get("/api/settings")
        assert response.status_code == 200
        data = response.json()
        assert data["nut"]["upsName"] == "snmpups"
        assert data["wizard"]["completed"] is False

    @pytest.mark.asyncio
    async def test_patch_settings(self, client, runtime):
        response = await client.patch("/api/settings", json={"theme": {"mode": "dark"}, "data": {"retentionDays": 7}})
        assert response.status_code == 200
        assert response.json()["theme"]["mode"] == "dark"
        assert runtime.config.data.retention_days == 7

    @pytest.mark.asyncio
    async def test_invalid_patch_is_rejected(self, client, runtime):
        response = await client.patch("/api/settings", json={"battery": {"shutdownPct": 90}})
        assert response.status_code == 400
        assert response.json()["error"] == "validation"
        assert runtime.config.battery.shutdown_pct == 20

    @pytest.mark.asyncio
    async def test_start_with_system_updates_login_item(self, client, mock_os_adapter):
        response = await client.patch("/api/settings", json={"startup": {"startWithSystem": True}})
        assert response.status_code == 200
        mock_os_adapter.set_login_item.assert_called_once_with(True)


class TestTelemetryAPI:

    @pytest.mark.asyncio
    async def test_columns_and_empty_latest(self, client):
        columns = (await client.get("/api/telemetry/columns")).json()["columns"]
        assert "battery_charge_pct" in columns
        assert (await client.get("/api/telemetry/latest")).json() == {"point": None}

    @pytest.mark.asyncio
    async def test_query_range_and_min_max(self, client, runtime):
        store = runtime.telemetry_store
        await store.insert_telemetry_point("2024-05-01T12:00:00Z", {"battery_charge_pct": 100.0})
        await store.insert_telemetry_point("2024-05-01T12:00:10Z", {"battery_charge_pct": 90.0})

        response = await client.post("/api/telemetry/query-range", json={
            "startIso": "2024-05-01T11:59:00Z",
            "endIso": "2024-05-01T12:01:00Z",
            "columns": ["battery_charge_pct"],
            "maxPoints": 300,
        })
        assert response.status_code == 200
        assert response.json()["points"] == [
            {"ts": "2024-05-01T12:00:00.000Z", "battery_charge_pct": 100.0},
            {"ts": "2024-05-01T12:00:10.000Z", "battery_charge_pct": 90.0},
        ]

        response = await client.post("/api/telemetry/min-max", json={
            "startIso": "2024-05-01T11:59:00Z",
            "endIso": "2024-05-01T12:01:00Z",
        })
        assert response.json()["ranges"]["battery_charge_pct"] == {"min": 90.0, "max": 100.0}

    @pytest.mark.asyncio
    async def test_inverted_range_is_a_bad_request(self, client):
        response = await client.post("/api/telemetry/query-range", json={
            "startIso": "2024-05-02T00:00:00Z",
            "endIso": "2024-05-01T00:00:00Z",
        })
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_argument"


class TestWizardAPI:

    @pytest.mark.asyncio
    async def test_connection_test(self, client, nut_server):
        response = await client.post("/api/wizard/test-connection", json={
            "host": "127.0.0.1", "port": nut_server.port, "upsName": "myups",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["upsDescription"] == "Smart-UPS 1500"
        assert "error" not in data

    @pytest.mark.asyncio
    async def test_connection_test_reports_rejected_login(self, client, fake_nut_server_factory):
        server = fake_nut_server_factory(username="admin", password="secret")
        await server.start()
        try:
            response = await client.post("/api/wizard/test-connection", json={
                "host": "127.0.0.1", "port": server.port, "upsName": "myups",
                "username": "admin", "password": "wrong",
            })
        finally:
            await server.stop()
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert "ACCESS-DENIED" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_invalid_ups_name(self, client):
        response = await client.post("/api/wizard/test-connection", json={"host": "127.0.0.1", "upsName": "bad name"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_complete_wizard_starts_monitoring(self, client, runtime, nut_server):
        response = await client.post("/api/wizard/complete", json={
            "host": "127.0.0.1", "port": nut_server.port, "upsName": "myups",
        })
        assert response.status_code == 200
        assert response.json()["wizard"]["completed"] is True

        await wait_for(lambda: runtime.poller.state == ConnectionState.READY)
        await wait_for(lambda: runtime.tray.battery_pct == 100)

        state = (await client.get("/api/nut/state")).json()
        assert state["state"] == "ready"
        assert state["staticData"]["values"]["ups.mfr"] == "APC"

        tray = (await client.get("/api/nut/tray")).json()
        assert tray["bucket"] == "full"
        assert tray["tooltip"] == "myups | 100%"

        latest = (await client.get("/api/telemetry/latest")).json()["point"]
        assert latest["battery_charge_pct"] == 100.0

    @pytest.mark.asyncio
    async def test_start_local_components_requires_folder(self, client):
        response = await client.post("/api/wizard/start-local-components", json={"folderPath": " ", "upsName": "ups"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_argument"


class TestSetupAndAlertsAPI:

    @pytest.mark.asyncio
    async def test_validate_folder(self, client, tmp_path):
        response = await client.post("/api/setup/validate-folder", json={"folderPath": str(tmp_path)})
        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is False
        assert "sbin/upsd.exe" in data["missing"]

    @pytest.mark.asyncio
    async def test_serial_drivers_and_failed_setup(self, client, tmp_path):
        response = await client.get("/api/setup/serial-drivers", params={"folderPath": str(tmp_path)})
        assert response.json() == {"drivers": []}

        response = await client.post("/api/setup/snmp", json={"folderPath": str(tmp_path), "upsName": "ups"})
        assert response.status_code == 200
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_critical_alert_actions(self, client, runtime):
        response = await client.post("/api/critical-alert/test")
        assert response.status_code == 200
        assert response.json()["kind"] == "test"
        assert runtime.alerts.active is not None

        response = await client.post("/api/critical-alert/shutdown-now")
        assert response.status_code == 409
        assert response.json()["error"] == "state"

        response = await client.post("/api/critical-alert/dismiss")
        assert response.json() == {"success": True}
        assert runtime.alerts.active is None


def test_websocket_pushes_bus_events(runtime):
    app = create_app(runtime)
    with TestClient(app) as test_client:
        with test_client.websocket_connect("/ws") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "hello"
            assert hello["data"]["clientId"]
            assert "criticalAlert" not in hello["data"]["latest"]

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

            test_client.portal.call(runtime.alerts.show_test)
            message = ws.receive_json()
            assert message["type"] == "criticalAlert"
            assert message["data"]["action"] == "show"
            assert message["data"]["kind"] == "test"

            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "snapshot"})
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert snapshot["data"]["latest"]["criticalAlert"]["data"]["action"] == "show"

        # A late client starts from the latest alert event.
        with test_client.websocket_connect("/ws") as ws:
            hello = ws.receive_json()
            assert hello["data"]["latest"]["criticalAlert"]["data"]["kind"] == "test"
