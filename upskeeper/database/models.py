"""
SQLAlchemy database models for upskeeper.

A single wide table holds the derived UPS telemetry: one row per sample
timestamp and one nullable float column per telemetry series.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Float
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..nut.mapping import TELEMETRY_COLUMNS
from ..utils.timeparse import format_ts


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class UPSTelemetry(Base):
    """
    Time-series of UPS telemetry.

    ``ts`` is stored as naive UTC. A column is NULL when the UPS did not
    report the source variable for that sample.
    """
    __tablename__ = "ups_telemetry"

    ts: Mapped[datetime] = mapped_column(DateTime, primary_key=True)

    # Battery
    battery_voltage: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="Battery voltage (V)")
    battery_charge_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="Battery charge (0-100)")
    battery_current: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="Battery current (A)")
    battery_temperature: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="Battery temperature (C)")
    battery_runtime_sec: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="Estimated runtime (s)")

    # Input / output line
    input_voltage: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    input_frequency_hz: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    input_current: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    output_voltage: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    output_frequency_hz: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    output_current: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # UPS
    ups_apparent_power_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ups_apparent_power_va: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ups_realpower_watts: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ups_load_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="UPS load (0-100)")
    ups_temperature: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ups_status_num: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="1 = on line power, 0 = on battery",
    )

    def __repr__(self) -> str:
        return f"<UPSTelemetry(ts={self.ts!r}, charge={self.battery_charge_pct})>"

    def to_dict(self, columns=None) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ts": format_ts(self.ts)}
        for column in columns or TELEMETRY_COLUMNS:
            data[column] = getattr(self, column)
        return data
