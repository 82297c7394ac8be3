from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..core.runtime import AgentRuntime
from .deps import get_runtime

router = APIRouter()


@router.get("/nut/state", summary="Get the NUT connection state and static data")
async def get_state(runtime: AgentRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    """
    Returns ``{state, staticData}``; ``staticData`` is null until the first
    successful discovery.
    """
    return runtime.poller.get_state().model_dump(mode="json", by_alias=True)


@router.get("/nut/tray", summary="Get the tray icon state")
async def get_tray(runtime: AgentRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    return runtime.tray.snapshot()
