from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..core.runtime import AgentRuntime
from .deps import get_runtime

router = APIRouter()


@router.post("/critical-alert/test", summary="Show a test critical alert")
async def show_test_alert(runtime: AgentRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    alert = await runtime.alerts.show_test()
    return alert.model_dump(by_alias=True)


@router.post(
    "/critical-alert/shutdown-now",
    summary="Run the shutdown action of the active alert",
    responses={409: {"description": "No alert with a shutdown action is active."}},
)
async def shutdown_now(runtime: AgentRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    await runtime.alerts.trigger_shutdown()
    return {"success": True}


@router.post("/critical-alert/dismiss", summary="Dismiss the active alert")
async def dismiss_alert(runtime: AgentRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    await runtime.alerts.dismiss()
    return {"success": True}
