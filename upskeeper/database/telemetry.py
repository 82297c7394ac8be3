"""
Telemetry store.

Persists derived UPS telemetry rows and serves the range, min/max and
latest-point queries used by the dashboard. The underlying SQLite driver is
synchronous, so every statement runs on a worker thread; writes are
serialized through a single asyncio lock.
"""

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import anyio
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from ..errors import InvalidArgumentError, StateError
from ..nut.mapping import TELEMETRY_COLUMNS, is_telemetry_column, map_snapshot_to_columns
from ..utils.timeparse import format_ts, parse_iso_timestamp, to_naive_utc
from .engine import ensure_schema, init_db
from .models import UPSTelemetry

logger = logging.getLogger(__name__)

DEFAULT_MAX_POINTS = 300
MAX_POINTS_LIMIT = 5000


def normalize_max_points(max_points: Any) -> int:
    """Clamp a requested point budget to ``[1, 5000]``; missing or non-finite gives 300."""
    if max_points is None:
        return DEFAULT_MAX_POINTS
    try:
        value = float(max_points)
    except (TypeError, ValueError):
        return DEFAULT_MAX_POINTS
    if not math.isfinite(value):
        return DEFAULT_MAX_POINTS
    return int(min(max(math.floor(value), 1), MAX_POINTS_LIMIT))


def sample_rows(rows: Sequence[Any], max_points: int) -> List[Any]:
    """Downsample by index striding, always keeping the first and last rows.

    With ``max_points <= 1`` only the last row is kept.
    """
    count = len(rows)
    if count <= max_points:
        return list(rows)
    if max_points <= 1:
        return [rows[-1]]
    step = (count - 1) / (max_points - 1)
    return [rows[int(math.floor(i * step + 0.5))] for i in range(max_points)]


def _coerce_ts(ts: datetime | str) -> datetime:
    if isinstance(ts, datetime):
        return to_naive_utc(ts)
    return parse_iso_timestamp(ts)


class TelemetryStore:
    """
    Owner of the telemetry database file.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None
        self._write_lock = asyncio.Lock()

    async def open(self) -> None:
        """Create the engine and bring the schema up to date."""
        if self._engine is not None:
            return
        engine, factory = await anyio.to_thread.run_sync(init_db, self.db_path)
        await anyio.to_thread.run_sync(ensure_schema, engine)
        self._engine = engine
        self._session_factory = factory

    async def close(self) -> None:
        engine = self._engine
        self._engine = None
        self._session_factory = None
        if engine is not None:
            await anyio.to_thread.run_sync(engine.dispose)
            logger.info("Telemetry database closed")

    @staticmethod
    def get_available_columns() -> List[str]:
        return list(TELEMETRY_COLUMNS)

    @asynccontextmanager
    async def _session(self):
        if self._session_factory is None:
            raise StateError("Telemetry store is not open")
        session = self._session_factory()
        try:
            yield session
            await anyio.to_thread.run_sync(session.commit)
        except Exception:
            await anyio.to_thread.run_sync(session.rollback)
            raise
        finally:
            await anyio.to_thread.run_sync(session.close)

    async def insert_from_nut_snapshot(
        self,
        ts: datetime | str,
        snapshot: Mapping[str, str],
        mapping: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Optional[float]]:
        """
        Map a raw NUT snapshot to telemetry columns and upsert it.

        Args:
            ts: Sample timestamp (primary key).
            snapshot: Raw NUT variables.
            mapping: Optional column -> NUT field overrides.

        Returns:
            The columns that were assigned, including those set to None.
        """
        values = map_snapshot_to_columns(snapshot, mapping)
        return await self.insert_telemetry_point(ts, values)

    async def insert_telemetry_point(
        self, ts: datetime | str, values: Mapping[str, Optional[float]]
    ) -> Dict[str, Optional[float]]:
        """Upsert pre-computed column values. Unknown columns are dropped."""
        row_values = {k: v for k, v in values.items() if is_telemetry_column(k)}
        if not row_values:
            return {}
        stamp = _coerce_ts(ts)
        stmt = sqlite_insert(UPSTelemetry).values(ts=stamp, **row_values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["ts"],
            set_={column: stmt.excluded[column] for column in row_values},
        )
        async with self._write_lock:
            async with self._session() as session:
                await anyio.to_thread.run_sync(session.execute, stmt)
        logger.debug("Upserted telemetry row ts=%s (%d columns)", format_ts(stamp), len(row_values))
        return row_values

    async def get_latest_telemetry_point(self) -> Optional[Dict[str, Any]]:
        stmt = select(UPSTelemetry).order_by(UPSTelemetry.ts.desc()).limit(1)
        async with self._session() as session:
            result = await anyio.to_thread.run_sync(session.execute, stmt)
            row = result.scalars().first()
        return row.to_dict() if row is not None else None

    async def query_range(
        self,
        start_iso: str,
        end_iso: str,
        columns: Optional[Iterable[str]] = None,
        max_points: Any = DEFAULT_MAX_POINTS,
    ) -> List[Dict[str, Any]]:
        """
        Return rows in ``[start, end]`` ordered by time, downsampled.

        Raises:
            InvalidArgumentError: On unparseable timestamps or start > end.
        """
        start = parse_iso_timestamp(start_iso)
        end = parse_iso_timestamp(end_iso)
        if start > end:
            raise InvalidArgumentError("Range start must not be after range end")

        if columns is None:
            selected = list(TELEMETRY_COLUMNS)
        else:
            selected = [c for c in dict.fromkeys(columns) if is_telemetry_column(c)]
        if not selected:
            return []

        stmt = (
            select(UPSTelemetry.ts, *(getattr(UPSTelemetry, c) for c in selected))
            .where(UPSTelemetry.ts >= start, UPSTelemetry.ts <= end)
            .order_by(UPSTelemetry.ts.asc())
        )
        async with self._session() as session:
            result = await anyio.to_thread.run_sync(session.execute, stmt)
            rows = result.all()

        sampled = sample_rows(rows, normalize_max_points(max_points))
        return [
            {"ts": format_ts(row[0]), **{c: row[i + 1] for i, c in enumerate(selected)}}
            for row in sampled
        ]

    async def get_min_max_for_range(
        self, start_iso: str, end_iso: str
    ) -> Dict[str, Dict[str, Optional[float]]]:
        """Per-column min and max over ``[start, end]``; None when no data."""
        start = parse_iso_timestamp(start_iso)
        end = parse_iso_timestamp(end_iso)
        if start > end:
            raise InvalidArgumentError("Range start must not be after range end")

        aggregates = []
        for column in TELEMETRY_COLUMNS:
            attr = getattr(UPSTelemetry, column)
            aggregates.extend([func.min(attr), func.max(attr)])
        stmt = select(*aggregates).where(UPSTelemetry.ts >= start, UPSTelemetry.ts <= end)
        async with self._session() as session:
            result = await anyio.to_thread.run_sync(session.execute, stmt)
            row = result.one()

        return {
            column: {"min": row[2 * i], "max": row[2 * i + 1]}
            for i, column in enumerate(TELEMETRY_COLUMNS)
        }

    async def delete_older_than(self, cutoff: datetime | str) -> int:
        """Delete rows with ``ts < cutoff`` and return how many matched."""
        stamp = _coerce_ts(cutoff)
        count_stmt = select(func.count()).select_from(UPSTelemetry).where(UPSTelemetry.ts < stamp)
        async with self._write_lock:
            async with self._session() as session:
                result = await anyio.to_thread.run_sync(session.execute, count_stmt)
                count = result.scalar_one()
                if count:
                    await anyio.to_thread.run_sync(
                        session.execute, delete(UPSTelemetry).where(UPSTelemetry.ts < stamp)
                    )
        if count:
            logger.info("Deleted %d telemetry rows older than %s", count, format_ts(stamp))
        return count
