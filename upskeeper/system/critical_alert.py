"""
Critical alert controller.

Owns the behaviour behind the battery warning/critical modal: which alert
is active, the shutdown countdown and the "shut down now" action. The UI
only renders ``criticalAlert`` events published on the bus:

- ``{"action": "show", ...alert}``
- ``{"action": "countdown", "remainingSeconds": n}``
- ``{"action": "shutdownTriggered"}``
- ``{"action": "dismiss"}``
"""

import asyncio
import logging
from typing import Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..core.bus import CRITICAL_ALERT, EventBus
from ..errors import StateError

logger = logging.getLogger(__name__)

ShutdownCallback = Callable[[], Awaitable[object]]


class CriticalAlert(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    kind: Literal["warning", "critical", "test"]
    title: str
    body: str
    battery_pct: Optional[int] = None
    shutdown_method: Optional[str] = None
    countdown_seconds: Optional[int] = None
    can_shutdown_now: bool = False


class CriticalAlertController:
    """Shows one alert at a time; a new alert replaces the previous one."""

    def __init__(self, bus: EventBus, tick_seconds: float = 1.0):
        self.bus = bus
        self.tick_seconds = tick_seconds
        self.active: Optional[CriticalAlert] = None
        self._on_shutdown: Optional[ShutdownCallback] = None
        self._shutdown_invoked = False
        self._countdown_task: Optional[asyncio.Task] = None

    @property
    def countdown_running(self) -> bool:
        return self._countdown_task is not None and not self._countdown_task.done()

    async def show(self, alert: CriticalAlert, on_shutdown: Optional[ShutdownCallback] = None) -> None:
        """
        Show ``alert``.

        Args:
            alert: The alert to display.
            on_shutdown: Invoked at most once, either when the countdown
                expires or when the user triggers the shutdown.
        """
        self._cancel_countdown()
        self.active = alert
        self._on_shutdown = on_shutdown
        self._shutdown_invoked = False
        logger.warning("Showing %s alert: %s", alert.kind, alert.body)
        await self.bus.publish(CRITICAL_ALERT, {"action": "show", **alert.model_dump(by_alias=True)})

        if alert.countdown_seconds and on_shutdown is not None:
            self._countdown_task = asyncio.create_task(self._run_countdown(alert.countdown_seconds))

    async def show_test(self) -> CriticalAlert:
        alert = CriticalAlert(
            kind="test",
            title="Test alert",
            body="This is a test of the critical battery alert.",
        )
        await self.show(alert)
        return alert

    async def trigger_shutdown(self) -> None:
        """Run the shutdown action of the active alert now."""
        if self.active is None or self._on_shutdown is None:
            raise StateError("No shutdown action is available")
        self._cancel_countdown()
        await self._fire_shutdown()

    async def dismiss(self) -> None:
        self._cancel_countdown()
        if self.active is None:
            return
        logger.info("Dismissing %s alert", self.active.kind)
        self.active = None
        self._on_shutdown = None
        await self.bus.publish(CRITICAL_ALERT, {"action": "dismiss"})

    async def _run_countdown(self, seconds: int) -> None:
        try:
            for remaining in range(seconds, 0, -1):
                await self.bus.publish(CRITICAL_ALERT, {"action": "countdown", "remainingSeconds": remaining})
                await asyncio.sleep(self.tick_seconds)
            self._countdown_task = None
            await self._fire_shutdown()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Critical alert countdown failed")

    async def _fire_shutdown(self) -> None:
        if self._shutdown_invoked or self._on_shutdown is None:
            return
        self._shutdown_invoked = True
        await self.bus.publish(CRITICAL_ALERT, {"action": "shutdownTriggered"})
        await self._on_shutdown()

    def _cancel_countdown(self) -> None:
        task = self._countdown_task
        self._countdown_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
