"""
Local NUT setup endpoints.

Thin wrappers over ``upskeeper.nut.setup``; file-system work runs on a
worker thread.
"""

from typing import Any, Dict, List

import anyio
from fastapi import APIRouter, Body, Query
from pydantic import BaseModel, Field

from ..nut.setup import (
    FolderValidation,
    SetupResult,
    list_serial_drivers,
    prepare_local_driver,
    prepare_local_nut,
    validate_nut_folder,
    wait_for_serial_driver_ready,
)

router = APIRouter()


class FolderRequest(BaseModel):
    folder_path: str = Field(..., alias="folderPath")


class DriverReadyRequest(FolderRequest):
    ups_name: str = Field(..., alias="upsName")
    timeout_seconds: float = Field(45, alias="timeoutSeconds", gt=0, le=300)


class SerialDriversResponse(BaseModel):
    drivers: List[str]


@router.post("/setup/validate-folder", response_model=FolderValidation, summary="Check a NUT install folder")
async def validate_folder(request: FolderRequest) -> FolderValidation:
    return await anyio.to_thread.run_sync(validate_nut_folder, request.folder_path)


@router.get("/setup/serial-drivers", response_model=SerialDriversResponse, summary="List installed serial drivers")
async def get_serial_drivers(folder_path: str = Query(..., alias="folderPath")) -> SerialDriversResponse:
    drivers = await anyio.to_thread.run_sync(list_serial_drivers, folder_path)
    return SerialDriversResponse(drivers=drivers)


@router.post(
    "/setup/snmp",
    response_model=SetupResult,
    response_model_exclude_none=True,
    summary="Write upsd.conf and an SNMP ups.conf",
)
async def prepare_snmp(payload: Dict[str, Any] = Body(...)) -> SetupResult:
    return await anyio.to_thread.run_sync(prepare_local_nut, payload)


@router.post(
    "/setup/serial",
    response_model=SetupResult,
    response_model_exclude_none=True,
    summary="Write upsd.conf and a serial ups.conf",
)
async def prepare_serial(payload: Dict[str, Any] = Body(...)) -> SetupResult:
    return await anyio.to_thread.run_sync(prepare_local_driver, payload)


@router.post(
    "/setup/wait-serial-driver",
    summary="Wait until a serial driver reports a UPS status",
    responses={504: {"description": "The driver did not become ready in time."}},
)
async def wait_serial_driver(request: DriverReadyRequest) -> Dict[str, Any]:
    await wait_for_serial_driver_ready(request.folder_path, request.ups_name, request.timeout_seconds)
    return {"ready": True}
