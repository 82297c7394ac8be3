"""
Tests for battery threshold handling and the shutdown dispatcher.
"""

import asyncio

import pytest

from upskeeper.core.bus import CRITICAL_ALERT, EventBus
from upskeeper.core.config_schema import apply_config_patch, default_app_config, parse_config_patch
from upskeeper.errors import IOFailureError
from upskeeper.system.battery_safety import BatterySafety, crossed_below, normalize_battery_pct
from upskeeper.system.critical_alert import CriticalAlertController


class Harness:
    def __init__(self, os_adapter, battery=None):
        self.config = default_app_config()
        if battery:
            self.configure(battery)
        self.bus = EventBus()
        self.alert_events = []
        self._handle = self.bus.subscribe(CRITICAL_ALERT, self.alert_events.append)
        self.alerts = CriticalAlertController(self.bus, tick_seconds=0.01)
        self.safety = BatterySafety(lambda: self.config, os_adapter, self.alerts)

    def configure(self, battery):
        self.config = apply_config_patch(self.config, parse_config_patch({"battery": battery}))
        return self.config

    async def feed(self, *readings):
        for pct in readings:
            await self.safety.handle_telemetry({"battery_charge_pct": pct})

    @property
    def actions(self):
        return [event["action"] for event in self.alert_events]


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.parametrize(
    "value, expected",
    [(55.4, 55), (99.6, 100), (40.5, 41), (20.5, 21), (0.5, 1), (150, 100), (-3, 0), ("42", 42), ("n/a", None), (None, None), (True, None), (float("nan"), None)],
)
def test_normalize_battery_pct(value, expected):
    assert normalize_battery_pct(value) == expected


def test_crossed_below():
    assert crossed_below(None, 40, 40)
    assert crossed_below(41, 40, 40)
    assert not crossed_below(40, 39, 40)
    assert not crossed_below(50, 41, 40)


@pytest.mark.asyncio
async def test_discharge_countdown_dispatches_sleep_once(mock_os_adapter):
    h = Harness(mock_os_adapter, {"shutdownEnabled": True, "shutdownCountdownSeconds": 2, "shutdownMethod": "sleep"})

    await h.feed(50)
    mock_os_adapter.show_toast.assert_not_awaited()

    await h.feed(39)
    assert h.safety.warned
    mock_os_adapter.show_toast.assert_awaited_once_with("Battery low", "Battery at 39%. Save your work.", level="warning")
    assert h.alert_events[-1]["kind"] == "warning"
    assert h.alert_events[-1]["canShutdownNow"] is True

    await h.feed(38)
    assert mock_os_adapter.show_toast.await_count == 1

    await h.feed(19)
    assert h.safety.shutdown_warned
    assert mock_os_adapter.show_toast.await_args.kwargs["level"] == "critical"
    show_events = [e for e in h.alert_events if e["action"] == "show"]
    assert [e["kind"] for e in show_events] == ["warning", "critical"]
    assert show_events[-1]["countdownSeconds"] == 2
    assert h.actions.index("dismiss") < len(h.actions) - 1

    await wait_for(lambda: mock_os_adapter.request_sleep.await_count == 1)
    countdown = [e["remainingSeconds"] for e in h.alert_events if e["action"] == "countdown"]
    assert countdown == [2, 1]
    assert "shutdownTriggered" in h.actions
    assert h.safety.shutdown_scheduled
    assert h.safety.active_shutdown_method == "sleep"

    # Further low readings do not dispatch again
    await h.feed(18, 10)
    await asyncio.sleep(0.05)
    assert mock_os_adapter.request_sleep.await_count == 1
    mock_os_adapter.request_shutdown.assert_not_awaited()


@pytest.mark.asyncio
async def test_recovery_above_margin_resets_latches(mock_os_adapter):
    h = Harness(mock_os_adapter, {"shutdownEnabled": True, "criticalShutdownAlertEnabled": False})

    await h.feed(50, 19)
    mock_os_adapter.request_sleep.assert_awaited_once()
    assert h.safety.warned and h.safety.shutdown_warned

    # 44 is inside the hysteresis margin (40 + 5)
    await h.feed(44)
    assert h.safety.warned and h.safety.shutdown_scheduled

    await h.feed(46)
    assert not h.safety.warned
    assert not h.safety.shutdown_warned
    assert not h.safety.shutdown_scheduled
    mock_os_adapter.cancel_shutdown.assert_not_awaited()

    # A second discharge warns again
    await h.feed(39)
    assert mock_os_adapter.show_toast.await_count == 3


@pytest.mark.asyncio
async def test_first_reading_below_threshold_fires(mock_os_adapter):
    h = Harness(mock_os_adapter)
    await h.feed(15)
    assert h.safety.warned and h.safety.shutdown_warned
    levels = [call.kwargs["level"] for call in mock_os_adapter.show_toast.await_args_list]
    assert levels == ["warning", "critical"]
    # Shutdown is disabled by default: the critical alert has no countdown
    assert h.alert_events[-1]["countdownSeconds"] is None
    assert not h.alerts.countdown_running
    mock_os_adapter.request_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_unusable_readings_are_ignored(mock_os_adapter):
    h = Harness(mock_os_adapter)
    await h.safety.handle_telemetry({"input_voltage": 230.0})
    await h.safety.handle_telemetry({"battery_charge_pct": None})
    assert h.safety.last_battery_pct is None
    mock_os_adapter.show_toast.assert_not_awaited()


@pytest.mark.asyncio
async def test_warning_notifications_can_be_disabled(mock_os_adapter):
    h = Harness(mock_os_adapter, {"warningToastEnabled": False, "criticalAlertEnabled": False})
    await h.feed(50, 30)
    assert h.safety.warned
    mock_os_adapter.show_toast.assert_not_awaited()
    assert h.alert_events == []


@pytest.mark.asyncio
async def test_failed_request_clears_the_guard(mock_os_adapter):
    h = Harness(mock_os_adapter, {"shutdownEnabled": True, "shutdownMethod": "shutdown"})
    mock_os_adapter.request_shutdown.side_effect = IOFailureError("systemctl poweroff exited with code 1")

    assert await h.safety.dispatch_shutdown() is False
    assert not h.safety.shutdown_scheduled
    assert h.safety.active_shutdown_method is None

    mock_os_adapter.request_shutdown.side_effect = None
    assert await h.safety.dispatch_shutdown() is True
    assert await h.safety.dispatch_shutdown() is False
    assert mock_os_adapter.request_shutdown.await_count == 2


@pytest.mark.asyncio
async def test_disabling_shutdown_cancels_countdown_and_pending_shutdown(mock_os_adapter):
    h = Harness(mock_os_adapter, {"shutdownEnabled": True, "shutdownMethod": "shutdown", "shutdownCountdownSeconds": 60})
    h.alerts.tick_seconds = 1.0

    await h.feed(50, 19)
    assert h.alerts.countdown_running

    previous = h.config
    current = h.configure({"shutdownEnabled": False})
    await h.safety.handle_config_updated(previous, current)

    assert not h.alerts.countdown_running
    assert h.actions[-1] == "dismiss"
    mock_os_adapter.request_shutdown.assert_not_awaited()

    # A shutdown that was already issued is cancelled at the OS level
    h.configure({"shutdownEnabled": True})
    assert await h.safety.dispatch_shutdown() is True
    previous = h.config
    await h.safety.handle_config_updated(previous, h.configure({"shutdownEnabled": False}))
    mock_os_adapter.cancel_shutdown.assert_awaited_once()
    assert not h.safety.shutdown_scheduled


@pytest.mark.asyncio
async def test_raised_threshold_recovery_on_config_change(mock_os_adapter):
    h = Harness(mock_os_adapter, {"warningPct": 60, "shutdownPct": 20})
    await h.feed(70, 55)
    assert h.safety.warned

    previous = h.config
    await h.safety.handle_config_updated(previous, h.configure({"warningPct": 40}))
    assert not h.safety.warned


@pytest.mark.asyncio
async def test_half_percent_readings_round_up_before_threshold_check(mock_os_adapter):
    h = Harness(mock_os_adapter, {"warningPct": 40, "shutdownPct": 20, "shutdownEnabled": True})

    await h.feed(60, 40.5)
    assert h.safety.last_battery_pct == 41
    assert not h.safety.warned

    await h.feed(39.5, 20.5)
    assert h.safety.warned
    assert h.safety.last_battery_pct == 21
    assert not h.safety.shutdown_warned
    mock_os_adapter.request_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_critical_alert_offers_shutdown_when_automatic_shutdown_is_off(mock_os_adapter):
    h = Harness(mock_os_adapter, {"criticalShutdownAlertEnabled": True, "shutdownEnabled": False, "shutdownMethod": "sleep"})

    await h.feed(60, 19)
    critical = h.alert_events[-1]
    assert critical["kind"] == "critical"
    assert critical["canShutdownNow"] is True
    assert critical["countdownSeconds"] is None
    assert not h.alerts.countdown_running

    await h.alerts.trigger_shutdown()
    mock_os_adapter.request_sleep.assert_awaited_once()
    assert h.safety.shutdown_scheduled
    assert "shutdownTriggered" in h.actions
