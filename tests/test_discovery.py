"""
Tests for the static/dynamic capability discovery.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from upskeeper.nut.discovery import classify_field, discover_capabilities


@pytest.mark.parametrize(
    "name",
    [
        "device.model",
        "driver.version",
        "ups.firmware.aux",
        "ups.model",
        "ups.mfr",
        "ups.serial",
        "ups.type",
        "input.voltage.nominal",
        "battery.mfr.date",
        "battery.type",
    ],
)
def test_static_hints_win(name):
    # Even a changing value stays static when a static hint matches.
    assert classify_field(name, {name: "a"}, {name: "b"}) == "static"


@pytest.mark.parametrize(
    "name",
    ["battery.charge", "battery.runtime.low", "input.voltage", "output.current", "ups.load", "ups.status", "ambient.humidity"],
)
def test_dynamic_allow_list(name):
    assert classify_field(name, {name: "1"}, {name: "1"}) == "dynamic"


def test_unhinted_fields_use_the_two_sample_heuristic():
    assert classify_field("ups.beeper.status", {"ups.beeper.status": "enabled"}, {"ups.beeper.status": "enabled"}) == "static"
    assert classify_field("ups.test.result", {"ups.test.result": "idle"}, {"ups.test.result": "running"}) == "dynamic"


@pytest.mark.asyncio
async def test_discover_capabilities():
    first = {
        "ups.model": "Smart-UPS",
        "input.voltage.nominal": "230",
        "battery.charge": "100",
        "ups.beeper.status": "enabled",
        "ups.test.result": "idle",
    }
    second = dict(first, **{"battery.charge": "99", "ups.test.result": "running"})
    client = MagicMock()
    client.list_variables = AsyncMock(side_effect=[first, second])

    with patch("upskeeper.nut.discovery.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        result = await discover_capabilities(client, "myups", init_sample_delay_ms=700)

    mock_sleep.assert_awaited_once_with(0.7)
    assert result.available == list(first)
    assert set(result.static) == {"ups.model", "input.voltage.nominal", "ups.beeper.status"}
    assert set(result.dynamic) == {"battery.charge", "ups.test.result"}
    assert set(result.static) | set(result.dynamic) == set(result.available)
    assert not set(result.static) & set(result.dynamic)
    assert result.static_snapshot == {
        "ups.model": "Smart-UPS",
        "input.voltage.nominal": "230",
        "ups.beeper.status": "enabled",
    }
    # Dynamic values come from the second sample
    assert result.initial_dynamic_snapshot == {"battery.charge": "99", "ups.test.result": "running"}
    assert result.combined_snapshot["battery.charge"] == "99"


@pytest.mark.asyncio
async def test_zero_delay_reuses_the_first_sample():
    client = MagicMock()
    client.list_variables = AsyncMock(return_value={"battery.charge": "80", "ups.mfr": "APC"})

    result = await discover_capabilities(client, "myups", init_sample_delay_ms=0)

    client.list_variables.assert_awaited_once_with("myups")
    assert result.dynamic == ["battery.charge"]
    assert result.static == ["ups.mfr"]
