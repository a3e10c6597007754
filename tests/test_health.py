import aiohttp
import pytest

from ttn_bridge.health import HealthReporter, HealthServer


@pytest.mark.asyncio
async def test_health_reporter_snapshot():
    reporter = HealthReporter()

    await reporter.update("mqtt", True)
    await reporter.update("control", False, "stopped")

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    component_list = snapshot.get("components", [])
    assert isinstance(component_list, list)
    components = {item["name"]: item for item in component_list}
    assert components["mqtt"]["healthy"] is True
    assert components["control"]["healthy"] is False
    assert components["control"]["detail"] == "stopped"


@pytest.mark.asyncio
async def test_health_reporter_bridge_state_affects_status():
    bridge = {"state": "consuming", "reconnectPending": False, "stats": {}}
    reporter = HealthReporter(
        bridge_provider=lambda: bridge,
        device_provider=lambda: {"temperature": 21.5, "ledOn": True},
    )
    await reporter.update("mqtt", True)

    healthy = await reporter.snapshot()
    assert healthy["status"] == "ok"
    assert healthy["bridgeState"]["state"] == "consuming"
    assert healthy["device"]["temperature"] == 21.5

    bridge["reconnectPending"] = True
    assert (await reporter.snapshot())["status"] == "degraded"

    bridge["reconnectPending"] = False
    bridge["state"] = "draining"
    assert (await reporter.snapshot())["status"] == "degraded"


@pytest.mark.asyncio
async def test_set_providers_keeps_existing_when_omitted():
    reporter = HealthReporter(device_provider=lambda: {"ledOn": None})
    reporter.set_providers(bridge_provider=lambda: {"state": "consuming"})

    snapshot = await reporter.snapshot()

    assert snapshot["device"] == {"ledOn": None}
    assert snapshot["bridgeState"] == {"state": "consuming"}


@pytest.mark.asyncio
async def test_health_server_serves_snapshot(unused_tcp_port):
    reporter = HealthReporter()
    await reporter.update("mqtt", True)

    host = "127.0.0.1"
    port = unused_tcp_port
    server = HealthServer(reporter, host, port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{port}/healthz") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["status"] == "ok"
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_health_server_reports_degraded(unused_tcp_port):
    reporter = HealthReporter(
        bridge_provider=lambda: {"state": "consuming", "reconnectPending": True}
    )

    host = "127.0.0.1"
    port = unused_tcp_port
    server = HealthServer(reporter, host, port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{port}/healthz") as response:
                payload = await response.json()
                assert response.status == 503
                assert payload["status"] == "degraded"
    finally:
        await server.stop()
