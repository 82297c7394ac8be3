"""
Line-quality alerts.

Checks input/output voltage and frequency against the configured nominal
values and tolerance bands, and raises a toast per metric with a cooldown.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, NamedTuple

from ..core.config_schema import AppConfig, LineConfig
from .os_adapter import OSAdapter

logger = logging.getLogger(__name__)


class LineMetric(NamedTuple):
    column: str
    label: str
    kind: str  # "voltage" or "frequency"
    unit: str


LINE_METRICS = (
    LineMetric("input_voltage", "Input voltage", "voltage", "V"),
    LineMetric("output_voltage", "Output voltage", "voltage", "V"),
    LineMetric("input_frequency_hz", "Input frequency", "frequency", "Hz"),
    LineMetric("output_frequency_hz", "Output frequency", "frequency", "Hz"),
)


@dataclass(frozen=True)
class ToleranceBand:
    low: float
    high: float

    def contains(self, value: float) -> bool:
        return self.low <= value <= self.high


def tolerance_band(nominal: float, tolerance_pos_pct: float, tolerance_neg_pct: float) -> ToleranceBand:
    return ToleranceBand(
        low=nominal * (1 - tolerance_neg_pct / 100),
        high=nominal * (1 + tolerance_pos_pct / 100),
    )


def band_for(metric: LineMetric, line: LineConfig) -> ToleranceBand:
    if metric.kind == "voltage":
        return tolerance_band(line.nominal_voltage, line.voltage_tolerance_pos_pct, line.voltage_tolerance_neg_pct)
    return tolerance_band(line.nominal_frequency, line.frequency_tolerance_pos_pct, line.frequency_tolerance_neg_pct)


class LineAlert:
    def __init__(
        self,
        get_config: Callable[[], AppConfig],
        os_adapter: OSAdapter,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.get_config = get_config
        self.os_adapter = os_adapter
        self.clock = clock
        # metric column -> clock() of the last alert
        self.last_alert: Dict[str, float] = {}

    async def handle_telemetry(self, values: Mapping[str, Any]) -> List[str]:
        """
        Check one telemetry update.

        Returns:
            The columns that raised an alert on this update.
        """
        line = self.get_config().line
        if not line.alert_enabled:
            return []

        now = self.clock()
        cooldown_seconds = line.alert_cooldown_minutes * 60
        fired = []
        for metric in LINE_METRICS:
            value = values.get(metric.column)
            if value is None or not math.isfinite(value):
                continue
            band = band_for(metric, line)
            if band.contains(value):
                continue
            last = self.last_alert.get(metric.column)
            if last is not None and now - last < cooldown_seconds:
                continue
            self.last_alert[metric.column] = now
            fired.append(metric.column)
            logger.warning(
                "%s out of range: %.2f %s (allowed %.2f-%.2f)",
                metric.label, value, metric.unit, band.low, band.high,
            )
            await self.os_adapter.show_toast(
                f"{metric.label} out of range",
                f"{metric.label} is {value:.1f} {metric.unit} "
                f"(allowed {band.low:.1f}-{band.high:.1f} {metric.unit}).",
                level="warning",
            )
        return fired

    def handle_config_updated(self, previous: AppConfig, current: AppConfig) -> None:
        if not current.line.alert_enabled and self.last_alert:
            self.last_alert.clear()
