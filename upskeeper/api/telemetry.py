from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ..core.runtime import AgentRuntime
from ..database.telemetry import DEFAULT_MAX_POINTS
from .deps import get_runtime

router = APIRouter()


class RangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_iso: str = Field(..., alias="startIso", description="Range start (ISO 8601)")
    end_iso: str = Field(..., alias="endIso", description="Range end (ISO 8601), inclusive")


class QueryRangeRequest(RangeRequest):
    columns: Optional[List[str]] = Field(None, description="Columns to return; all when omitted")
    max_points: Optional[float] = Field(
        DEFAULT_MAX_POINTS, alias="maxPoints", description="Downsampling limit, clamped to 1..5000"
    )


class ColumnsResponse(BaseModel):
    columns: List[str]


class LatestResponse(BaseModel):
    point: Optional[Dict[str, Any]] = None


class QueryRangeResponse(BaseModel):
    points: List[Dict[str, Any]]


class MinMaxResponse(BaseModel):
    ranges: Dict[str, Dict[str, Optional[float]]]


@router.get("/telemetry/columns", response_model=ColumnsResponse, summary="List telemetry columns")
async def get_available_columns(runtime: AgentRuntime = Depends(get_runtime)) -> ColumnsResponse:
    return ColumnsResponse(columns=runtime.telemetry_store.get_available_columns())


@router.get("/telemetry/latest", response_model=LatestResponse, summary="Get the most recent telemetry row")
async def get_latest(runtime: AgentRuntime = Depends(get_runtime)) -> LatestResponse:
    return LatestResponse(point=await runtime.telemetry_store.get_latest_telemetry_point())


@router.post(
    "/telemetry/query-range",
    response_model=QueryRangeResponse,
    summary="Query a downsampled time range",
    responses={400: {"description": "Invalid timestamps or an inverted range."}},
)
async def query_range(
    request: QueryRangeRequest,
    runtime: AgentRuntime = Depends(get_runtime),
) -> QueryRangeResponse:
    """
    Rows in ``[startIso, endIso]`` ordered by time, index-strided down to
    ``maxPoints`` rows.
    """
    points = await runtime.telemetry_store.query_range(
        request.start_iso, request.end_iso, request.columns, request.max_points
    )
    return QueryRangeResponse(points=points)


@router.post("/telemetry/min-max", response_model=MinMaxResponse, summary="Per-column min and max")
async def get_min_max(
    request: RangeRequest,
    runtime: AgentRuntime = Depends(get_runtime),
) -> MinMaxResponse:
    ranges = await runtime.telemetry_store.get_min_max_for_range(request.start_iso, request.end_iso)
    return MinMaxResponse(ranges=ranges)
