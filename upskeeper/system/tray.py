"""Tray icon state, derived from bus events. Rendering is left to the UI."""

import logging
from typing import Any, Dict, Mapping, Optional

from ..core.config_schema import AppConfig
from ..nut.models import ConnectionState
from .battery_safety import normalize_battery_pct

logger = logging.getLogger(__name__)

# Upper bound (inclusive) of each charge bucket.
BUCKETS = (
    (10, "empty"),
    (35, "low"),
    (65, "medium"),
    (90, "high"),
)


def battery_bucket(battery_pct: Optional[int], connection_state: str) -> str:
    if connection_state != ConnectionState.READY.value or battery_pct is None:
        return "disconnected"
    for upper, name in BUCKETS:
        if battery_pct <= upper:
            return name
    return "full"


class TrayState:
    def __init__(self, ups_name: str = ""):
        self.ups_name = ups_name
        self.battery_pct: Optional[int] = None
        self.connection_state = ConnectionState.IDLE.value

    @property
    def bucket(self) -> str:
        return battery_bucket(self.battery_pct, self.connection_state)

    @property
    def tooltip(self) -> str:
        pct = "--%" if self.battery_pct is None else f"{self.battery_pct}%"
        return f"{self.ups_name} | {pct}"

    def handle_telemetry(self, payload: Mapping[str, Any]) -> None:
        values = payload.get("values") or {}
        if "battery_charge_pct" in values:
            self._update(battery_pct=normalize_battery_pct(values["battery_charge_pct"]))

    def handle_connection_state(self, payload: Mapping[str, Any]) -> None:
        state = payload.get("state")
        if state:
            self._update(connection_state=str(state))

    def handle_config_updated(self, previous: AppConfig, current: AppConfig) -> None:
        if previous.nut.ups_name != current.nut.ups_name:
            self.ups_name = current.nut.ups_name

    def snapshot(self) -> Dict[str, Any]:
        return {
            "upsName": self.ups_name,
            "batteryPct": self.battery_pct,
            "connectionState": self.connection_state,
            "bucket": self.bucket,
            "tooltip": self.tooltip,
        }

    def _update(self, **changes: Any) -> None:
        before = self.bucket
        for name, value in changes.items():
            setattr(self, name, value)
        if self.bucket != before:
            logger.debug("Tray icon bucket %s -> %s", before, self.bucket)
