"""
Tests for mapping raw NUT values onto telemetry columns.
"""

import pytest

from upskeeper.nut.mapping import (
    DEFAULT_MAPPING,
    TELEMETRY_COLUMNS,
    build_field_to_column,
    map_nut_value_to_number,
    map_snapshot_to_columns,
    parse_ups_status,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("  230.1 V ", 230.1),
        ("100", 100.0),
        ("-12.5", -12.5),
        ("1.5e3", 1500.0),
        ("approx 49.9Hz", 49.9),
        ("--", None),
        ("", None),
        (None, None),
        ("inf", None),
        ("nan", None),
    ],
)
def test_map_nut_value_to_number(raw, expected):
    assert map_nut_value_to_number(raw) == expected


def test_parse_ups_status():
    assert parse_ups_status("OL CHRG") == 1
    assert parse_ups_status("OB DISCHRG LB") == 0
    assert parse_ups_status("ABSENT") is None
    assert parse_ups_status(None) is None


def test_default_mapping_only_targets_known_columns():
    assert set(DEFAULT_MAPPING) <= set(TELEMETRY_COLUMNS)


def test_custom_mapping_replaces_every_default_field_for_the_column():
    table = build_field_to_column({"ups_realpower_watts": "ups.power.nominal"})
    assert table["ups.power.nominal"] == "ups_realpower_watts"
    assert "ups.realpower" not in table
    assert "output.realpower" not in table


def test_custom_mapping_ignores_unknown_columns_and_empty_fields():
    table = build_field_to_column({"not_a_column": "ups.load", "input_voltage": "  "})
    assert table == build_field_to_column()


def test_map_snapshot_uses_null_not_zero_for_unparseable_values():
    values = map_snapshot_to_columns({"battery.charge": "n/a", "ups.load": "18", "ups.status": "OB"})
    assert values == {"battery_charge_pct": None, "ups_load_pct": 18.0, "ups_status_num": 0.0}


def test_map_snapshot_skips_missing_fields():
    values = map_snapshot_to_columns({"input.voltage": "229"})
    assert values == {"input_voltage": 229.0}


def test_alternate_source_does_not_clobber_a_parsed_value():
    values = map_snapshot_to_columns({"ups.realpower": "120", "output.realpower": "unknown"})
    assert values["ups_realpower_watts"] == 120.0
