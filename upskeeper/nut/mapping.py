"""
Mapping of raw NUT variables onto numeric telemetry columns.
"""

import math
import re
from typing import Dict, Mapping, Optional

TELEMETRY_COLUMNS = (
    "battery_voltage",
    "battery_charge_pct",
    "battery_current",
    "battery_temperature",
    "battery_runtime_sec",
    "input_voltage",
    "input_frequency_hz",
    "input_current",
    "output_voltage",
    "output_frequency_hz",
    "output_current",
    "ups_apparent_power_pct",
    "ups_apparent_power_va",
    "ups_realpower_watts",
    "ups_load_pct",
    "ups_temperature",
    "ups_status_num",
)

# Default user-facing mapping: telemetry column -> NUT field.
DEFAULT_MAPPING: Dict[str, str] = {
    "battery_voltage": "battery.voltage",
    "battery_charge_pct": "battery.charge",
    "battery_current": "battery.current",
    "input_voltage": "input.voltage",
    "input_frequency_hz": "input.frequency",
    "input_current": "input.current",
    "output_voltage": "output.voltage",
    "output_frequency_hz": "output.frequency",
    "output_current": "output.current",
    "ups_apparent_power_pct": "ups.power.percent",
    "ups_apparent_power_va": "ups.power",
    "ups_realpower_watts": "ups.realpower",
    "ups_load_pct": "ups.load",
    "ups_temperature": "ups.temperature",
    "ups_status_num": "ups.status",
}

# Built-in NUT field -> column table. Several fields may feed one column.
NUT_FIELD_TO_COLUMN: Dict[str, str] = {
    **{field: column for column, field in DEFAULT_MAPPING.items()},
    "battery.temperature": "battery_temperature",
    "battery.runtime": "battery_runtime_sec",
    "output.realpower": "ups_realpower_watts",
}

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def is_telemetry_column(column: str) -> bool:
    return column in TELEMETRY_COLUMNS


def map_nut_value_to_number(raw: Optional[str]) -> Optional[float]:
    """Parse a NUT value into a float.

    The whole (trimmed) string is tried first; otherwise the first signed
    decimal inside it is used, so ``"230.1 V"`` gives ``230.1``. Returns
    None for empty, unparseable or non-finite input.
    """
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    try:
        value = float(text)
    except ValueError:
        match = _NUMBER_RE.search(text)
        if not match:
            return None
        value = float(match.group(0))
    return value if math.isfinite(value) else None


def parse_ups_status(raw: Optional[str]) -> Optional[float]:
    """``OL...`` -> 1, ``OB...`` -> 0, anything else -> None."""
    if raw is None:
        return None
    status = str(raw).strip().upper()
    if status.startswith("OL"):
        return 1.0
    if status.startswith("OB"):
        return 0.0
    return None


def build_field_to_column(custom_mapping: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Combine a column -> field mapping over the built-in table.

    A custom entry replaces every built-in field that fed the same column.
    Unknown columns and empty fields are ignored.
    """
    field_to_column = dict(NUT_FIELD_TO_COLUMN)
    for column, field in (custom_mapping or {}).items():
        if not is_telemetry_column(column):
            continue
        field = (field or "").strip()
        if not field:
            continue
        for existing_field, existing_column in list(field_to_column.items()):
            if existing_column == column:
                del field_to_column[existing_field]
        field_to_column[field] = column
    return field_to_column


def map_snapshot_to_columns(
    snapshot: Mapping[str, str],
    custom_mapping: Optional[Mapping[str, str]] = None,
) -> Dict[str, Optional[float]]:
    """Turn a raw NUT snapshot into ``{column: float|None}``.

    Only columns whose source field is present in ``snapshot`` appear in the
    result; a present-but-unparseable value maps to None, never 0.
    """
    values: Dict[str, Optional[float]] = {}
    for field, column in build_field_to_column(custom_mapping).items():
        if field not in snapshot:
            continue
        raw = snapshot[field]
        if column == "ups_status_num":
            value = parse_ups_status(raw)
        else:
            value = map_nut_value_to_number(raw)
        if value is None and values.get(column) is not None:
            continue
        values[column] = value
    return values
