"""
Data models for the NUT integration.

Pydantic models for the payloads the polling service publishes on the
event bus, plus the connection state enum.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"


class FieldSets(BaseModel):
    available: List[str] = Field(default_factory=list)
    static: List[str] = Field(default_factory=list)
    dynamic: List[str] = Field(default_factory=list)


class UPSStaticData(BaseModel):
    """
    Full raw snapshot of the UPS with its field classification.

    Published on ``upsStaticData`` after discovery and after every poll.
    """

    values: Dict[str, str] = Field(default_factory=dict)
    fields: FieldSets = Field(default_factory=FieldSets)


class TelemetryUpdate(BaseModel):
    """A persisted telemetry point, published on ``upsTelemetryUpdated``."""

    ts: str = Field(..., description="ISO-8601 UTC timestamp of the row")
    values: Dict[str, Optional[float]]


class ConnectionStateChanged(BaseModel):
    state: ConnectionState


class NUTState(BaseModel):
    """Answer to ``nut.getState``."""

    state: ConnectionState
    static_data: Optional[UPSStaticData] = Field(None, serialization_alias="staticData")
