from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..core.config_schema import serialize_config
from ..core.runtime import AgentRuntime
from ..core.wizard import ConnectionTestRequest, ConnectionTestResult, WizardCompletion
from .deps import get_runtime

router = APIRouter()


class LocalComponentsRequest(BaseModel):
    folder_path: str = Field(..., alias="folderPath")
    ups_name: str = Field(..., alias="upsName")


@router.post(
    "/wizard/test-connection",
    response_model=ConnectionTestResult,
    response_model_exclude_none=True,
    summary="Test a NUT server connection",
)
async def run_connection_test(
    request: ConnectionTestRequest,
    runtime: AgentRuntime = Depends(get_runtime),
) -> ConnectionTestResult:
    """
    Connect with a throw-away client and list the UPS variables.

    Connection failures are reported with ``success: false``.
    """
    return await runtime.test_connection(request)


@router.post(
    "/wizard/complete",
    summary="Save the wizard answers and start monitoring",
    responses={400: {"description": "The answers do not form valid settings."}},
)
async def complete_wizard(
    completion: WizardCompletion,
    runtime: AgentRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    config = await runtime.complete_wizard(completion)
    return serialize_config(config)


@router.post(
    "/wizard/start-local-components",
    summary="Start the local NUT driver and upsd",
    responses={502: {"description": "A local component failed to start."}},
)
async def start_local_components(
    request: LocalComponentsRequest,
    runtime: AgentRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    await runtime.poller.start_local_components_for_wizard(request.folder_path, request.ups_name)
    return {"success": True}
