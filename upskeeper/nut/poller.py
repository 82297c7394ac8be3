"""
Background polling service for the NUT integration.

This module contains the NUTPollingService, the state machine that
connects to the NUT server, discovers the UPS capabilities, polls the
variables at the configured cadence, persists telemetry and publishes the
results on the event bus. Failures move the service to ``degraded`` and
schedule a reconnect with exponential backoff.

States: idle -> connecting -> initializing -> ready, with
degraded -> reconnecting -> connecting on failure.
"""

import asyncio
import logging
import math
from typing import Any, Callable, Dict, List, Optional, Set

from ..core.bus import CONNECTION_STATE_CHANGED, UPS_STATIC_DATA, UPS_TELEMETRY_UPDATED, EventBus
from ..core.config_schema import AppConfig
from ..core.config_store import ConfigStore
from ..database.telemetry import TelemetryStore
from ..errors import InvalidArgumentError
from ..utils.logging import log_trace_payload, trace_enabled
from ..utils.timeparse import format_ts, utc_now
from .client import NUTClient
from .discovery import DEFAULT_INIT_SAMPLE_DELAY_MS, discover_capabilities
from .models import ConnectionState, ConnectionStateChanged, FieldSets, NUTState, TelemetryUpdate, UPSStaticData
from .supervisor import ChildSupervisor

logger = logging.getLogger(__name__)

INITIAL_RECONNECT_DELAY_MS = 1000
MAX_RECONNECT_DELAY_MS = 30000
MIN_POLL_INTERVAL_MS = 500
MAX_POLL_INTERVAL_MS = 60000
FALLBACK_POLL_INTERVAL_MS = 2000

CONNECTION_FIELDS = (
    "host",
    "port",
    "ups_name",
    "username",
    "password",
    "launch_local_components",
    "local_nut_folder_path",
)


def clamp_polling_interval_ms(interval_ms: Any) -> int:
    """Clamp to ``[500, 60000]``; missing or non-finite input gives 2000."""
    try:
        value = float(interval_ms)
    except (TypeError, ValueError):
        return FALLBACK_POLL_INTERVAL_MS
    if not math.isfinite(value):
        return FALLBACK_POLL_INTERVAL_MS
    return int(min(max(math.floor(value), MIN_POLL_INTERVAL_MS), MAX_POLL_INTERVAL_MS))


def reconnect_delay_ms(
    attempt: int,
    initial_ms: float = INITIAL_RECONNECT_DELAY_MS,
    max_ms: float = MAX_RECONNECT_DELAY_MS,
) -> float:
    return min(initial_ms * 2 ** attempt, max_ms)


def nut_connection_changed(previous: AppConfig, current: AppConfig) -> bool:
    return any(
        getattr(previous.nut, name) != getattr(current.nut, name) for name in CONNECTION_FIELDS
    )


class NUTPollingService:
    """
    A service that keeps a live view of one UPS.

    Owns the NUT client and the local child-process supervisor. Only this
    service writes the connection state and the cached field sets.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        telemetry_store: TelemetryStore,
        bus: EventBus,
        supervisor: ChildSupervisor,
        client_factory: Callable[[], NUTClient] = NUTClient,
        init_sample_delay_ms: float = DEFAULT_INIT_SAMPLE_DELAY_MS,
        initial_reconnect_delay_ms: float = INITIAL_RECONNECT_DELAY_MS,
        max_reconnect_delay_ms: float = MAX_RECONNECT_DELAY_MS,
    ):
        """
        Initialize the polling service.

        Args:
            config_store: Source of the current AppConfig.
            telemetry_store: Destination for telemetry rows.
            bus: Event bus for state, static data and telemetry events.
            supervisor: Manager for local driver/upsd processes.
            client_factory: Builds the NUT client owned by this service.
            init_sample_delay_ms: Delay between the two discovery samples.
            initial_reconnect_delay_ms: First reconnect delay.
            max_reconnect_delay_ms: Reconnect delay cap.
        """
        self.config_store = config_store
        self.telemetry_store = telemetry_store
        self.bus = bus
        self.supervisor = supervisor
        self.client = client_factory()
        self.init_sample_delay_ms = init_sample_delay_ms
        self.initial_reconnect_delay_ms = initial_reconnect_delay_ms
        self.max_reconnect_delay_ms = max_reconnect_delay_ms

        self.state = ConnectionState.IDLE
        self.started = False
        self.reconnect_attempt = 0
        self.last_reconnect_delay_ms: Optional[float] = None

        self.available_fields: List[str] = []
        self.static_fields: List[str] = []
        self.dynamic_fields: List[str] = []
        # Latest full raw snapshot (static + dynamic fields).
        self.current_snapshot: Dict[str, str] = {}

        self._poll_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._poll_in_flight = False
        self._tasks: Set[asyncio.Task] = set()

    # -- public API -----------------------------------------------------------

    async def start(self) -> None:
        """Start connecting in the background. Calling it again is a no-op."""
        if self.started:
            return
        logger.info("Starting NUT polling service")
        self.started = True
        self._spawn(self._connect_and_initialize())

    async def stop(self) -> None:
        """Stop polling, close the client and terminate managed children."""
        self.started = False
        self._clear_poll_timer()
        self._clear_reconnect_timer()
        self._cancel_tasks()
        await self.client.close()
        await self.supervisor.stop(
            launch_local_components=self.config_store.get().nut.launch_local_components,
            force_managed_children=True,
        )
        await self._set_state(ConnectionState.IDLE)
        logger.info("NUT polling service stopped")

    def get_state(self) -> NUTState:
        static_data = self._static_data() if self.current_snapshot or self.available_fields else None
        return NUTState(state=self.state, static_data=static_data)

    def get_static_snapshot(self) -> Dict[str, str]:
        return dict(self.current_snapshot)

    async def start_local_components_for_wizard(self, folder_path: str, ups_name: str) -> None:
        folder = (folder_path or "").strip()
        if not folder:
            raise InvalidArgumentError("folderPath is required")
        name = (ups_name or "").strip()
        if not name:
            raise InvalidArgumentError("upsName is required")
        await self.supervisor.ensure_running(True, folder, name)

    async def handle_config_updated(self, previous: AppConfig, current: AppConfig) -> None:
        """React to a committed configuration change."""
        if not previous.wizard.completed and current.wizard.completed:
            if not self.started:
                await self.start()
            return

        if not self.started:
            return

        if nut_connection_changed(previous, current):
            logger.info("NUT connection settings changed; reconnecting")
            await self.reconnect_now()
            return

        if (
            previous.polling.interval_ms != current.polling.interval_ms
            and self.state == ConnectionState.READY
        ):
            self._start_poll_timer(current.polling.interval_ms)

    async def reconnect_now(self) -> None:
        self._clear_poll_timer()
        self._clear_reconnect_timer()
        self._cancel_tasks()
        await self.supervisor.stop(
            launch_local_components=self.config_store.get().nut.launch_local_components,
            force_managed_children=True,
        )
        await self.client.close()
        self.reconnect_attempt = 0
        await self._set_state(ConnectionState.RECONNECTING)
        self._spawn(self._connect_and_initialize())

    # -- state machine --------------------------------------------------------

    async def _connect_and_initialize(self) -> None:
        if not self.started:
            return
        try:
            config = self.config_store.get()
            nut = config.nut
            await self._set_state(ConnectionState.CONNECTING)
            await self.supervisor.ensure_running(
                nut.launch_local_components, nut.local_nut_folder_path, nut.ups_name
            )
            await self.client.connect(
                host=nut.host,
                port=nut.port,
                ups_name=nut.ups_name,
                username=nut.username,
                password=nut.password,
            )

            await self._set_state(ConnectionState.INITIALIZING)
            result = await discover_capabilities(self.client, nut.ups_name, self.init_sample_delay_ms)
            if not self.started:
                return

            self.available_fields = result.available
            self.static_fields = result.static
            self.dynamic_fields = result.dynamic
            self.current_snapshot = result.combined_snapshot
            logger.debug(
                "Capability discovery completed (available=%d static=%d dynamic=%d)",
                len(self.available_fields), len(self.static_fields), len(self.dynamic_fields),
            )
            await self._emit_static_data()

            self._log_polled_snapshot(result.initial_dynamic_snapshot, "initial")
            await self._persist_and_broadcast(result.initial_dynamic_snapshot)

            self.reconnect_attempt = 0
            await self._set_state(ConnectionState.READY)
            self._start_poll_timer(config.polling.interval_ms)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_connection_failure(e)

    async def _poll_dynamic_fields(self) -> None:
        if not self.started or self._poll_in_flight or not self.available_fields:
            return
        self._poll_in_flight = True
        try:
            config = self.config_store.get()
            full_snapshot = await self.client.get_variables(config.nut.ups_name, self.available_fields)
            if not self.started:
                return
            self._log_polled_snapshot(full_snapshot, "runtime")
            # Static fields are refreshed too, so nominal changes are picked up.
            self.current_snapshot = {**self.current_snapshot, **full_snapshot}
            await self._emit_static_data()

            dynamic_snapshot = {
                name: full_snapshot[name] for name in self.dynamic_fields if name in full_snapshot
            }
            await self._persist_and_broadcast(dynamic_snapshot)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_connection_failure(e)
        finally:
            self._poll_in_flight = False

    async def _persist_and_broadcast(self, dynamic_snapshot: Dict[str, str]) -> None:
        config = self.config_store.get()
        timestamp = utc_now()
        values = await self.telemetry_store.insert_from_nut_snapshot(
            timestamp, dynamic_snapshot, config.nut.mapping
        )
        if not values or not self.started:
            return
        if trace_enabled(logger):
            log_trace_payload(logger, f"Mapped {len(values)} telemetry values", values)
        else:
            logger.debug("Mapped %d telemetry values", len(values))
        payload = TelemetryUpdate(ts=format_ts(timestamp), values=values)
        await self.bus.publish(UPS_TELEMETRY_UPDATED, payload.model_dump())

    async def _handle_connection_failure(self, error: Exception) -> None:
        self._clear_poll_timer()
        try:
            await self.client.close()
        except Exception as close_error:
            logger.debug("Ignoring error while closing NUT client: %s", close_error)

        if not self.started:
            return

        logger.error("NUT connection failure: %s", error)
        await self._set_state(ConnectionState.DEGRADED)
        await self._schedule_reconnect()

    async def _schedule_reconnect(self) -> None:
        if not self.started or self._reconnect_handle is not None:
            return
        delay_ms = reconnect_delay_ms(
            self.reconnect_attempt, self.initial_reconnect_delay_ms, self.max_reconnect_delay_ms
        )
        self.reconnect_attempt += 1
        self.last_reconnect_delay_ms = delay_ms
        logger.info("Reconnecting to NUT server in %.1fs (attempt %d)", delay_ms / 1000, self.reconnect_attempt)
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            delay_ms / 1000, self._on_reconnect_timer
        )
        await self._set_state(ConnectionState.RECONNECTING)

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        self._spawn(self._connect_and_initialize())

    # -- timers ---------------------------------------------------------------

    def _start_poll_timer(self, interval_ms: Any) -> None:
        self._clear_poll_timer()
        interval = clamp_polling_interval_ms(interval_ms) / 1000
        loop = asyncio.get_running_loop()

        def tick() -> None:
            self._poll_handle = loop.call_later(interval, tick)
            self._spawn(self._poll_dynamic_fields())

        self._poll_handle = loop.call_later(interval, tick)

    def _clear_poll_timer(self) -> None:
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None

    def _clear_reconnect_timer(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- events ---------------------------------------------------------------

    async def _set_state(self, state: ConnectionState) -> None:
        if self.state == state:
            return
        logger.info("NUT connection state %s -> %s", self.state.value, state.value)
        self.state = state
        await self.bus.publish(
            CONNECTION_STATE_CHANGED, ConnectionStateChanged(state=state).model_dump(mode="json")
        )

    def _static_data(self) -> UPSStaticData:
        return UPSStaticData(
            values=dict(self.current_snapshot),
            fields=FieldSets(
                available=list(self.available_fields),
                static=list(self.static_fields),
                dynamic=list(self.dynamic_fields),
            ),
        )

    async def _emit_static_data(self) -> None:
        await self.bus.publish(UPS_STATIC_DATA, self._static_data().model_dump())

    def _log_polled_snapshot(self, snapshot: Dict[str, str], context: str) -> None:
        message = f"[{context}] Polled {len(snapshot)} NUT fields"
        if trace_enabled(logger):
            log_trace_payload(logger, message, snapshot)
        else:
            logger.debug(message)
