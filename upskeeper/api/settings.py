from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from ..core.config_schema import serialize_config
from ..core.runtime import AgentRuntime
from .deps import get_runtime

router = APIRouter()


@router.get("/settings", summary="Get the current settings")
async def get_settings(runtime: AgentRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    return serialize_config(runtime.config)


@router.patch(
    "/settings",
    summary="Update settings with a partial patch",
    responses={400: {"description": "The patch or the merged settings are invalid."}},
)
async def update_settings(
    patch: Dict[str, Any] = Body(..., description="Sections to merge, camelCase keys"),
    runtime: AgentRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """
    Merge a partial settings patch and apply it to every running component.

    The previous settings stay in force when validation fails.
    """
    config = await runtime.update_settings(patch)
    return serialize_config(config)
