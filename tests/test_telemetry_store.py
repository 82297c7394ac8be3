"""
Tests for the SQLite telemetry store.

Tests cover:
- Upserts and null handling
- Range queries with downsampling and column filters
- Min/max aggregation
- Deletion and inline schema migration
"""

import sqlite3
from datetime import datetime, timedelta

import anyio
import pytest
from sqlalchemy import insert

from upskeeper.database.models import UPSTelemetry
from upskeeper.database.telemetry import TelemetryStore, normalize_max_points, sample_rows
from upskeeper.errors import InvalidArgumentError, StateError
from upskeeper.nut.mapping import TELEMETRY_COLUMNS

BASE_TS = datetime(2024, 5, 1, 12, 0, 0)


async def _bulk_insert(store: TelemetryStore, rows):
    def _insert():
        with store._session_factory() as session:
            session.execute(insert(UPSTelemetry), rows)
            session.commit()

    await anyio.to_thread.run_sync(_insert)


class TestHelpers:
    """Point budget normalization and index striding."""

    @pytest.mark.parametrize(
        "requested, expected",
        [(None, 300), ("abc", 300), (float("nan"), 300), (0, 1), (-5, 1), (12.9, 12), (10_000, 5000)],
    )
    def test_normalize_max_points(self, requested, expected):
        assert normalize_max_points(requested) == expected

    def test_sample_rows_keeps_first_and_last(self):
        rows = list(range(1200))
        sampled = sample_rows(rows, 300)
        assert len(sampled) == 300
        assert sampled[0] == 0
        assert sampled[-1] == 1199
        assert sampled == sorted(set(sampled))

    def test_sample_rows_under_budget_is_unchanged(self):
        assert sample_rows([1, 2, 3], 300) == [1, 2, 3]

    def test_single_point_budget_keeps_last_row(self):
        assert sample_rows([1, 2, 3], 1) == [3]


class TestWrites:
    """Upserts of telemetry rows."""

    @pytest.mark.asyncio
    async def test_unparseable_values_are_stored_as_null(self, telemetry_store):
        assigned = await telemetry_store.insert_from_nut_snapshot(
            BASE_TS, {"battery.charge": "n/a", "input.voltage": "230.1"}
        )
        assert assigned == {"battery_charge_pct": None, "input_voltage": 230.1}

        latest = await telemetry_store.get_latest_telemetry_point()
        assert latest["ts"] == "2024-05-01T12:00:00.000Z"
        assert latest["battery_charge_pct"] is None
        assert latest["input_voltage"] == 230.1
        assert latest["output_voltage"] is None

    @pytest.mark.asyncio
    async def test_upsert_on_same_timestamp_merges_columns(self, telemetry_store):
        await telemetry_store.insert_telemetry_point(BASE_TS, {"battery_charge_pct": 100.0, "input_voltage": 230.0})
        await telemetry_store.insert_telemetry_point(BASE_TS, {"battery_charge_pct": 90.0})

        points = await telemetry_store.query_range("2024-05-01T11:00:00Z", "2024-05-01T13:00:00Z")
        assert len(points) == 1
        assert points[0]["battery_charge_pct"] == 90.0
        assert points[0]["input_voltage"] == 230.0

    @pytest.mark.asyncio
    async def test_unknown_columns_are_dropped(self, telemetry_store):
        assert await telemetry_store.insert_telemetry_point(BASE_TS, {"not_a_column": 1.0}) == {}
        assert await telemetry_store.get_latest_telemetry_point() is None

    @pytest.mark.asyncio
    async def test_custom_mapping_is_applied(self, telemetry_store):
        assigned = await telemetry_store.insert_from_nut_snapshot(
            BASE_TS, {"ups.power.nominal": "900"}, {"ups_realpower_watts": "ups.power.nominal"}
        )
        assert assigned == {"ups_realpower_watts": 900.0}

    @pytest.mark.asyncio
    async def test_latest_returns_newest_row(self, telemetry_store):
        await telemetry_store.insert_telemetry_point(BASE_TS, {"battery_charge_pct": 100.0})
        await telemetry_store.insert_telemetry_point(BASE_TS + timedelta(seconds=5), {"battery_charge_pct": 99.0})
        latest = await telemetry_store.get_latest_telemetry_point()
        assert latest["battery_charge_pct"] == 99.0
        assert latest["ts"] == "2024-05-01T12:00:05.000Z"

    @pytest.mark.asyncio
    async def test_closed_store_raises(self, tmp_path):
        store = TelemetryStore(str(tmp_path / "closed.db"))
        with pytest.raises(StateError):
            await store.get_latest_telemetry_point()


class TestQueries:
    """Range, min/max and retention queries."""

    @pytest.mark.asyncio
    async def test_downsampled_range_keeps_endpoints(self, telemetry_store):
        rows = [
            {"ts": BASE_TS + timedelta(seconds=i), "battery_charge_pct": float(i % 100)}
            for i in range(1200)
        ]
        await _bulk_insert(telemetry_store, rows)

        points = await telemetry_store.query_range(
            "2024-05-01T12:00:00Z", "2024-05-01T13:00:00Z", ["battery_charge_pct"], 300
        )
        assert len(points) == 300
        assert points[0]["ts"] == "2024-05-01T12:00:00.000Z"
        assert points[-1]["ts"] == "2024-05-01T12:19:59.000Z"
        assert [p["ts"] for p in points] == sorted(p["ts"] for p in points)
        assert set(points[0]) == {"ts", "battery_charge_pct"}

    @pytest.mark.asyncio
    async def test_zero_max_points_returns_last_row(self, telemetry_store):
        for i in range(3):
            await telemetry_store.insert_telemetry_point(BASE_TS + timedelta(seconds=i), {"ups_load_pct": float(i)})

        points = await telemetry_store.query_range(
            "2024-05-01T12:00:00Z", "2024-05-01T12:00:10Z", ["ups_load_pct"], 0
        )
        assert points == [{"ts": "2024-05-01T12:00:02.000Z", "ups_load_pct": 2.0}]

    @pytest.mark.asyncio
    async def test_column_filter_drops_unknown_columns(self, telemetry_store):
        await telemetry_store.insert_telemetry_point(BASE_TS, {"input_voltage": 231.0, "ups_load_pct": 20.0})

        points = await telemetry_store.query_range(
            "2024-05-01T12:00:00Z", "2024-05-01T12:00:00Z", ["input_voltage", "bogus", "input_voltage"]
        )
        assert points == [{"ts": "2024-05-01T12:00:00.000Z", "input_voltage": 231.0}]
        assert await telemetry_store.query_range("2024-05-01T12:00:00Z", "2024-05-01T12:00:00Z", ["bogus"]) == []

    @pytest.mark.asyncio
    async def test_range_with_offset_timestamps(self, telemetry_store):
        await telemetry_store.insert_telemetry_point(BASE_TS, {"input_voltage": 231.0})
        points = await telemetry_store.query_range("2024-05-01T13:59:00+02:00", "2024-05-01T14:01:00+02:00")
        assert len(points) == 1
        assert set(points[0]) == {"ts", *TELEMETRY_COLUMNS}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "start, end",
        [
            ("yesterday", "2024-05-01T12:00:00Z"),
            ("2024-05-01T12:00:00Z", ""),
            ("2024-05-01T13:00:00Z", "2024-05-01T12:00:00Z"),
        ],
    )
    async def test_invalid_ranges_are_rejected(self, telemetry_store, start, end):
        with pytest.raises(InvalidArgumentError):
            await telemetry_store.query_range(start, end)
        with pytest.raises(InvalidArgumentError):
            await telemetry_store.get_min_max_for_range(start, end)

    @pytest.mark.asyncio
    async def test_min_max_for_range(self, telemetry_store):
        for i, charge in enumerate((100.0, 80.0, 90.0)):
            await telemetry_store.insert_telemetry_point(BASE_TS + timedelta(minutes=i), {"battery_charge_pct": charge})
        await telemetry_store.insert_telemetry_point(BASE_TS + timedelta(hours=2), {"battery_charge_pct": 5.0})

        ranges = await telemetry_store.get_min_max_for_range("2024-05-01T12:00:00Z", "2024-05-01T12:30:00Z")
        assert ranges["battery_charge_pct"] == {"min": 80.0, "max": 100.0}
        assert ranges["input_voltage"] == {"min": None, "max": None}
        assert set(ranges) == set(TELEMETRY_COLUMNS)

    @pytest.mark.asyncio
    async def test_delete_older_than_is_idempotent(self, telemetry_store):
        await telemetry_store.insert_telemetry_point(BASE_TS - timedelta(days=40), {"ups_load_pct": 10.0})
        await telemetry_store.insert_telemetry_point(BASE_TS, {"ups_load_pct": 20.0})

        cutoff = BASE_TS - timedelta(days=30)
        assert await telemetry_store.delete_older_than(cutoff) == 1
        assert await telemetry_store.delete_older_than(cutoff) == 0
        latest = await telemetry_store.get_latest_telemetry_point()
        assert latest["ups_load_pct"] == 20.0


class TestSchema:
    """Schema creation against databases from older releases."""

    @pytest.mark.asyncio
    async def test_missing_columns_are_added_on_open(self, tmp_path):
        db_path = tmp_path / "old.db"
        conn = sqlite3.connect(db_path)
        conn.execute("CREATE TABLE ups_telemetry (ts DATETIME PRIMARY KEY, battery_charge_pct FLOAT)")
        conn.execute("INSERT INTO ups_telemetry VALUES ('2024-05-01 12:00:00.000000', 75.0)")
        conn.commit()
        conn.close()

        store = TelemetryStore(str(db_path))
        await store.open()
        try:
            latest = await store.get_latest_telemetry_point()
            assert latest["battery_charge_pct"] == 75.0
            assert latest["ups_temperature"] is None
        finally:
            await store.close()

        conn = sqlite3.connect(db_path)
        columns = {row[1] for row in conn.execute("PRAGMA table_info('ups_telemetry')")}
        conn.close()
        assert set(TELEMETRY_COLUMNS) <= columns

    @pytest.mark.asyncio
    async def test_open_is_repeatable(self, tmp_path):
        store = TelemetryStore(str(tmp_path / "nested" / "dir" / "t.db"))
        await store.open()
        await store.open()
        await store.close()
        await store.open()
        await store.close()
        assert (tmp_path / "nested" / "dir" / "t.db").exists()
