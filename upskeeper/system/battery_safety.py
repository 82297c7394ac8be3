"""
Battery safety.

Watches ``battery_charge_pct`` on every telemetry tick and reacts to the
warning and critical thresholds: toasts, the critical alert modal and the
shutdown dispatcher. Crossings are edge-triggered and latch until the
charge recovers above ``warningPct + 5``.
"""

import logging
import math
from typing import Any, Callable, Mapping, Optional

from ..core.config_schema import AppConfig, BatteryConfig
from .critical_alert import CriticalAlert, CriticalAlertController
from .os_adapter import OSAdapter

logger = logging.getLogger(__name__)

HYSTERESIS_MARGIN_PCT = 5


def normalize_battery_pct(value: Any) -> Optional[int]:
    """Round and clamp a charge reading to ``0..100``; None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    # Halves round up.
    return math.floor(min(max(number, 0.0), 100.0) + 0.5)


def crossed_below(previous: Optional[int], current: int, threshold: int) -> bool:
    if previous is None:
        return current <= threshold
    return previous > threshold and current <= threshold


class BatterySafety:
    """
    Latching battery threshold handler.

    State: ``warned``, ``shutdown_warned``, ``shutdown_scheduled``,
    ``active_shutdown_method`` and ``last_battery_pct``. Only touched from
    the event loop.
    """

    def __init__(
        self,
        get_config: Callable[[], AppConfig],
        os_adapter: OSAdapter,
        alerts: CriticalAlertController,
    ):
        self.get_config = get_config
        self.os_adapter = os_adapter
        self.alerts = alerts

        self.warned = False
        self.shutdown_warned = False
        self.shutdown_scheduled = False
        self.active_shutdown_method: Optional[str] = None
        self.last_battery_pct: Optional[int] = None

    async def handle_telemetry(self, values: Mapping[str, Any]) -> None:
        battery_pct = normalize_battery_pct(values.get("battery_charge_pct"))
        if battery_pct is None:
            return

        battery = self.get_config().battery
        previous = self.last_battery_pct

        if battery_pct > battery.warning_pct + HYSTERESIS_MARGIN_PCT:
            await self._reset_if_latched(battery_pct)

        if not self.warned and crossed_below(previous, battery_pct, battery.warning_pct):
            self.warned = True
            await self._on_warning(battery_pct, battery)

        if not self.shutdown_warned and crossed_below(previous, battery_pct, battery.shutdown_pct):
            self.shutdown_warned = True
            await self._on_critical(battery_pct, battery)

        self.last_battery_pct = battery_pct

    async def handle_config_updated(self, previous: AppConfig, current: AppConfig) -> None:
        if previous.battery.shutdown_enabled and not current.battery.shutdown_enabled:
            logger.info("Battery shutdown disabled; cancelling any pending shutdown")
            if self.alerts.countdown_running:
                await self.alerts.dismiss()
            await self.cancel_pending_shutdown()

        # Thresholds may have moved below the last reading.
        if (
            self.last_battery_pct is not None
            and self.last_battery_pct > current.battery.warning_pct + HYSTERESIS_MARGIN_PCT
        ):
            await self._reset_if_latched(self.last_battery_pct)

    async def dispatch_shutdown(self, method: Optional[str] = None) -> bool:
        """
        Run the configured shutdown method once.

        Returns:
            True if the OS request was issued, False if it was skipped or failed.
        """
        if self.shutdown_scheduled:
            logger.debug("Shutdown already scheduled; ignoring")
            return False

        method = method or self.get_config().battery.shutdown_method
        self.shutdown_scheduled = True
        self.active_shutdown_method = method
        logger.warning("Battery critical: requesting system %s", method)
        try:
            if method == "shutdown":
                await self.os_adapter.request_shutdown()
            else:
                await self.os_adapter.request_sleep()
        except Exception as e:
            logger.error("System %s request failed: %s", method, e)
            self.shutdown_scheduled = False
            self.active_shutdown_method = None
            return False
        return True

    async def cancel_pending_shutdown(self) -> None:
        if self.shutdown_scheduled and self.active_shutdown_method == "shutdown":
            try:
                await self.os_adapter.cancel_shutdown()
            except Exception as e:
                logger.warning("Failed to cancel scheduled shutdown: %s", e)
        self.shutdown_scheduled = False
        self.active_shutdown_method = None

    async def _reset_if_latched(self, battery_pct: int) -> None:
        if not (self.warned or self.shutdown_warned or self.shutdown_scheduled):
            return
        logger.info("Battery recovered to %d%%; resetting alerts", battery_pct)
        self.warned = False
        self.shutdown_warned = False
        await self.cancel_pending_shutdown()
        await self.alerts.dismiss()

    async def _on_warning(self, battery_pct: int, battery: BatteryConfig) -> None:
        logger.warning("Battery low: %d%% (warning threshold %d%%)", battery_pct, battery.warning_pct)
        if battery.warning_toast_enabled:
            await self.os_adapter.show_toast(
                "Battery low",
                f"Battery at {battery_pct}%. Save your work.",
                level="warning",
            )
        if battery.critical_alert_enabled:
            await self.alerts.show(
                CriticalAlert(
                    kind="warning",
                    title="Battery low",
                    body=f"Battery at {battery_pct}%, below the warning level of {battery.warning_pct}%.",
                    battery_pct=battery_pct,
                    shutdown_method=battery.shutdown_method,
                    can_shutdown_now=battery.shutdown_enabled,
                ),
                on_shutdown=self.dispatch_shutdown if battery.shutdown_enabled else None,
            )

    async def _on_critical(self, battery_pct: int, battery: BatteryConfig) -> None:
        logger.error("Battery critical: %d%% (shutdown threshold %d%%)", battery_pct, battery.shutdown_pct)
        if self.alerts.active is not None and self.alerts.active.kind == "warning":
            await self.alerts.dismiss()

        await self.os_adapter.show_toast(
            "Battery critical",
            f"Battery at {battery_pct}%.",
            level="critical",
        )

        if battery.critical_shutdown_alert_enabled:
            await self.alerts.show(
                CriticalAlert(
                    kind="critical",
                    title="Battery critical",
                    body=f"Battery at {battery_pct}%, below the shutdown level of {battery.shutdown_pct}%.",
                    battery_pct=battery_pct,
                    shutdown_method=battery.shutdown_method,
                    countdown_seconds=battery.shutdown_countdown_seconds if battery.shutdown_enabled else None,
                    can_shutdown_now=True,
                ),
                on_shutdown=self.dispatch_shutdown,
            )
        elif battery.shutdown_enabled:
            await self.dispatch_shutdown()
