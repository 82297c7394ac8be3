"""
First-run wizard operations.

``probe_nut_connection`` probes a NUT server with a throw-away client and
``build_wizard_patch`` turns the wizard answers into an AppConfig patch.
"""

import logging
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..errors import UpsKeeperError
from ..nut.client import NUTClient
from ..nut.setup import UPS_NAME_RE

logger = logging.getLogger(__name__)

DESCRIPTION_FIELDS = ("ups.model", "device.model", "ups.mfr")


class _WizardModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ConnectionTestRequest(_WizardModel):
    host: str = Field(..., min_length=1)
    port: int = Field(3493, ge=1, le=65535)
    ups_name: str
    username: Optional[str] = None
    password: Optional[str] = None

    @field_validator("ups_name")
    @classmethod
    def _ups_name(cls, value: str) -> str:
        value = value.strip()
        if not UPS_NAME_RE.match(value):
            raise ValueError("upsName must use letters, numbers, or hyphens")
        return value


class ConnectionTestResult(_WizardModel):
    success: bool
    ups_description: Optional[str] = None
    variables: Optional[Dict[str, str]] = None
    error: Optional[str] = None


class WizardCompletion(ConnectionTestRequest):
    mapping: Optional[Dict[str, str]] = None
    launch_local_components: Optional[bool] = None
    local_nut_folder_path: Optional[str] = None
    line_nominal_voltage: Optional[float] = None
    line_nominal_frequency: Optional[float] = None


def describe_ups(variables: Dict[str, str]) -> Optional[str]:
    for name in DESCRIPTION_FIELDS:
        value = (variables.get(name) or "").strip()
        if value:
            return value
    return None


async def probe_nut_connection(
    request: ConnectionTestRequest,
    client_factory: Callable[[], NUTClient] = NUTClient,
) -> ConnectionTestResult:
    """
    Connect, list the UPS variables and disconnect.

    Failures are reported in the result rather than raised.
    """
    client = client_factory()
    try:
        await client.connect(
            host=request.host,
            port=request.port,
            ups_name=request.ups_name,
            username=request.username or None,
            password=request.password or None,
        )
        variables = await client.list_variables(request.ups_name)
    except UpsKeeperError as e:
        logger.info("NUT connection test to %s:%s failed: %s", request.host, request.port, e)
        return ConnectionTestResult(success=False, error=str(e))
    finally:
        await client.close()

    logger.info("NUT connection test to %s:%s returned %d variables", request.host, request.port, len(variables))
    return ConnectionTestResult(success=True, ups_description=describe_ups(variables), variables=variables)


def build_wizard_patch(completion: WizardCompletion) -> Dict[str, Any]:
    """AppConfig patch (camelCase keys) that records the wizard answers."""
    nut: Dict[str, Any] = {
        "host": completion.host,
        "port": completion.port,
        "upsName": completion.ups_name,
        "username": completion.username or None,
        "password": completion.password or None,
    }
    if completion.mapping is not None:
        nut["mapping"] = completion.mapping
    if completion.launch_local_components is not None:
        nut["launchLocalComponents"] = completion.launch_local_components
    if completion.local_nut_folder_path:
        nut["localNutFolderPath"] = completion.local_nut_folder_path

    patch: Dict[str, Any] = {"nut": nut, "wizard": {"completed": True}}
    line: Dict[str, Any] = {}
    if completion.line_nominal_voltage is not None:
        line["nominalVoltage"] = completion.line_nominal_voltage
    if completion.line_nominal_frequency is not None:
        line["nominalFrequency"] = completion.line_nominal_frequency
    if line:
        patch["line"] = line
    return patch
