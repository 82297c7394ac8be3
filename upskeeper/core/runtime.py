"""
Agent runtime.

Builds and wires every component of the monitoring agent, and owns their
lifecycle. The API and the CLI both drive the agent through this object.

Startup order: settings -> ConfigStore -> telemetry DB -> bus
subscriptions -> retention -> poller (only once the wizard is completed).
Teardown unsubscribes every listener before the database is closed.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import anyio

from ..config import Settings
from ..database.engine import default_db_path
from ..database.retention import RetentionLoop
from ..database.telemetry import TelemetryStore
from ..nut.client import NUTClient
from ..nut.poller import NUTPollingService
from ..nut.supervisor import ChildSupervisor
from ..system.battery_safety import BatterySafety
from ..system.critical_alert import CriticalAlertController
from ..system.line_alert import LineAlert
from ..system.os_adapter import OSAdapter, get_os_adapter
from ..system.tray import TrayState
from ..utils.logging import apply_debug_level
from .bus import CONNECTION_STATE_CHANGED, THEME_SYSTEM_CHANGED, UPS_TELEMETRY_UPDATED, EventBus, Subscription
from .config_schema import AppConfig
from .config_store import ConfigStore
from .wizard import ConnectionTestRequest, ConnectionTestResult, WizardCompletion, build_wizard_patch, probe_nut_connection

logger = logging.getLogger(__name__)


class AgentRuntime:
    """The process-wide set of services, created once per agent."""

    def __init__(
        self,
        settings: Settings,
        *,
        os_adapter: Optional[OSAdapter] = None,
        client_factory: Callable[[], NUTClient] = NUTClient,
        supervisor: Optional[ChildSupervisor] = None,
        **poller_options: Any,
    ):
        self.settings = settings
        self.client_factory = client_factory
        self.bus = EventBus()
        self.config_store = ConfigStore(settings.settings_path)
        self.telemetry_store = TelemetryStore(default_db_path(settings.DATA_DIR))
        self.os_adapter = os_adapter or get_os_adapter(self.bus)
        if self.os_adapter.bus is None:
            self.os_adapter.bus = self.bus
        self.supervisor = supervisor or ChildSupervisor(self.os_adapter)
        self.alerts = CriticalAlertController(self.bus)
        self.poller = NUTPollingService(
            self.config_store,
            self.telemetry_store,
            self.bus,
            self.supervisor,
            client_factory=client_factory,
            **poller_options,
        )
        self.battery_safety = BatterySafety(self.config_store.get, self.os_adapter, self.alerts)
        self.line_alert = LineAlert(self.config_store.get, self.os_adapter)
        self.retention = RetentionLoop(
            self.telemetry_store, lambda: self.config_store.get().data.retention_days
        )
        self.tray = TrayState()

        self._subscriptions: List[Subscription] = []
        self._unsubscribe_config: Optional[Callable[[], None]] = None
        self.started = False

    @property
    def config(self) -> AppConfig:
        return self.config_store.get()

    async def start(self) -> None:
        if self.started:
            return
        config = await self.config_store.load(
            reset=self.settings.reset_settings_on_start,
            debug_level=self.settings.debug_level_on_start,
        )
        apply_debug_level(config.debug.level)
        await self.telemetry_store.open()

        self.tray.ups_name = config.nut.ups_name
        self._subscriptions = [
            self.bus.subscribe(UPS_TELEMETRY_UPDATED, self._on_telemetry),
            self.bus.subscribe(CONNECTION_STATE_CHANGED, self.tray.handle_connection_state),
        ]
        self._unsubscribe_config = self.config_store.subscribe(self._on_config_updated)

        await self.retention.start()
        if config.wizard.completed:
            await self.poller.start()
        else:
            logger.info("Setup wizard not completed; NUT polling is idle")
        self.started = True
        logger.info("upskeeper agent started (data dir %s)", self.settings.DATA_DIR)

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        await self.poller.stop()
        await self.retention.stop()
        await self.alerts.dismiss()

        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        if self._unsubscribe_config is not None:
            self._unsubscribe_config()
            self._unsubscribe_config = None

        await self.telemetry_store.close()
        logger.info("upskeeper agent stopped")

    # -- requests -------------------------------------------------------------

    async def update_settings(self, patch: Dict[str, Any]) -> AppConfig:
        return await self.config_store.update(patch)

    async def test_connection(self, request: ConnectionTestRequest) -> ConnectionTestResult:
        return await probe_nut_connection(request, self.client_factory)

    async def complete_wizard(self, completion: WizardCompletion) -> AppConfig:
        config = await self.config_store.update(build_wizard_patch(completion))
        logger.info("Setup wizard completed for UPS %s@%s:%s", completion.ups_name, completion.host, completion.port)
        return config

    # -- listeners ------------------------------------------------------------

    async def _on_telemetry(self, payload: Dict[str, Any]) -> None:
        values = payload.get("values") or {}
        await self.battery_safety.handle_telemetry(values)
        await self.line_alert.handle_telemetry(values)
        self.tray.handle_telemetry(payload)

    async def _on_config_updated(self, previous: AppConfig, current: AppConfig) -> None:
        steps = (
            ("poller", self.poller.handle_config_updated),
            ("retention", self._apply_retention),
            ("logging", self._apply_logging),
            ("login item", self._apply_login_item),
            ("battery safety", self.battery_safety.handle_config_updated),
            ("line alert", self._apply_line_alert),
            ("tray", self._apply_tray),
        )
        for name, step in steps:
            try:
                await step(previous, current)
            except Exception:
                logger.exception("Applying settings to %s failed", name)

    async def _apply_retention(self, previous: AppConfig, current: AppConfig) -> None:
        if previous.data.retention_days != current.data.retention_days:
            await self.retention.run_once()

    async def _apply_logging(self, previous: AppConfig, current: AppConfig) -> None:
        apply_debug_level(current.debug.level)

    async def _apply_login_item(self, previous: AppConfig, current: AppConfig) -> None:
        enabled = current.startup.start_with_system
        if previous.startup.start_with_system != enabled:
            await anyio.to_thread.run_sync(self.os_adapter.set_login_item, enabled)

    async def _apply_line_alert(self, previous: AppConfig, current: AppConfig) -> None:
        self.line_alert.handle_config_updated(previous, current)

    async def _apply_tray(self, previous: AppConfig, current: AppConfig) -> None:
        self.tray.handle_config_updated(previous, current)
        if previous.theme.mode != current.theme.mode:
            await self.bus.publish(THEME_SYSTEM_CHANGED, {"mode": current.theme.mode})
