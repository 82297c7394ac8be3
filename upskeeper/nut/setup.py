"""
Local NUT setup helper.

Validates a NUT installation folder and writes ``etc/upsd.conf`` and
``etc/ups.conf`` for either an SNMP UPS (``snmp-ups`` driver) or a serial
UPS. Also provides a readiness probe for slow-starting serial drivers
based on the ``upsc`` utility.
"""

import asyncio
import logging
import os
import re
import time
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ..errors import InvalidArgumentError, OperationTimeoutError
from .supervisor import executable_candidates

logger = logging.getLogger(__name__)

REQUIRED_DIRS = ["etc", "lib", "include", "bin", "cgi-bin", "sbin"]
REQUIRED_FILES = ["sbin/upsd.exe", "bin/nut.exe"]
SERIAL_DRIVERS = [
    "apcsmart", "bcmxcp", "belkin", "belkinunv", "bestfcom", "bestfortress",
    "bestuferrups", "bestups", "bicker_ser", "blazer_ser", "etapro", "everups",
    "gamatronic", "genericups", "huawei-ups2000", "isbmex", "ivtscd", "liebert",
    "liebert-esp2", "liebert-gxe", "masterguard", "meanwell_ntu", "metasys",
    "mge-shut", "mge-utalk", "microdowell", "must_ep2000pro", "nhs_ser",
    "nutdrv_hashx", "nutdrv_qx", "nutdrv_siemens-sitop", "oneac", "optiups",
    "powercom", "powerpanel", "powervar_cx_ser", "rhino", "riello_ser",
    "safenet", "solis", "tripplite", "tripplitesu", "upscode2", "victronups",
]

UPS_NAME_RE = re.compile(r"^[a-zA-Z0-9-]+$")
_OCTET = r"(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)"
SNMP_TARGET_RE = re.compile(rf"^{_OCTET}(?:\.{_OCTET}){{3}}(?::([1-9]\d{{0,4}}))?$")
COM_PORT_RE = re.compile(r"^COM\d+$", re.IGNORECASE)

SERIAL_DRIVER_READY_TIMEOUT = 45.0
SERIAL_DRIVER_READY_POLL_INTERVAL = 1.0
UPSC_QUERY_TIMEOUT = 5.0
UPSC_TARGET_HOST = "127.0.0.1:3493"
UPS_STATUS_WAIT_TOKEN = "WAIT"


class FolderValidation(BaseModel):
    valid: bool
    missing: List[str]
    writable: bool


class SetupResult(BaseModel):
    success: bool
    error: Optional[str] = None


def _config_value(value: str) -> str:
    return re.sub(r"\r?\n", " ", value).strip()


def validate_ups_name(name: Optional[str]) -> str:
    value = (name or "").strip()
    if not value or not UPS_NAME_RE.match(value):
        raise InvalidArgumentError("upsName must use letters, numbers, or hyphens")
    return value


class _LocalSetupPayload(BaseModel):
    folder_path: str = Field(..., alias="folderPath")
    ups_name: str = Field(..., alias="upsName")

    model_config = {"populate_by_name": True}

    @field_validator("folder_path")
    @classmethod
    def _folder_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("folderPath is required")
        return value

    @field_validator("ups_name")
    @classmethod
    def _ups_name_pattern(cls, value: str) -> str:
        value = value.strip()
        if not UPS_NAME_RE.match(value):
            raise ValueError("upsName must use letters, numbers, or hyphens")
        return value


class SnmpSetupPayload(_LocalSetupPayload):
    port: str
    snmp_version: Literal["v1", "v2c", "v3"] = Field(..., alias="snmpVersion")
    pollfreq: int
    mibs: Optional[str] = None
    community: Optional[str] = None
    sec_level: Optional[Literal["noAuthNoPriv", "authNoPriv", "authPriv"]] = Field(None, alias="secLevel")
    sec_name: Optional[str] = Field(None, alias="secName")
    auth_protocol: Optional[Literal["MD5", "SHA"]] = Field(None, alias="authProtocol")
    auth_password: Optional[str] = Field(None, alias="authPassword")
    priv_protocol: Optional[Literal["DES", "AES"]] = Field(None, alias="privProtocol")
    priv_password: Optional[str] = Field(None, alias="privPassword")

    @field_validator("port")
    @classmethod
    def _snmp_target(cls, value: str) -> str:
        value = value.strip()
        match = SNMP_TARGET_RE.match(value)
        if not match or (match.group(1) and int(match.group(1)) > 65535):
            raise ValueError("port must be a valid IP or IP:port SNMP target")
        return value

    @field_validator("pollfreq")
    @classmethod
    def _pollfreq_range(cls, value: int) -> int:
        if value < 3 or value > 15:
            raise ValueError("pollfreq must be an integer from 3 to 15")
        return value

    @model_validator(mode="after")
    def _v3_fields(self):
        self.mibs = (self.mibs or "").strip() or "auto"
        self.community = (self.community or "").strip() or "public"
        if self.snmp_version != "v3":
            return self
        if self.sec_level is None:
            raise ValueError("secLevel is required when snmpVersion is v3")
        if not (self.sec_name or "").strip():
            raise ValueError("secName is required when snmpVersion is v3")
        if self.sec_level in ("authNoPriv", "authPriv"):
            if self.auth_protocol is None:
                raise ValueError("authProtocol is required for authNoPriv/authPriv")
            if not (self.auth_password or "").strip():
                raise ValueError("authPassword is required for authNoPriv/authPriv")
        if self.sec_level == "authPriv":
            if self.priv_protocol is None:
                raise ValueError("privProtocol is required for authPriv")
            if not (self.priv_password or "").strip():
                raise ValueError("privPassword is required for authPriv")
        return self


class SerialSetupPayload(_LocalSetupPayload):
    driver: str
    port: str
    ttymode: Optional[str] = Field("raw", validate_default=True)

    @field_validator("driver")
    @classmethod
    def _supported_driver(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in SERIAL_DRIVERS:
            raise ValueError("driver is not in the supported serial driver list")
        return value

    @field_validator("port")
    @classmethod
    def _com_port(cls, value: str) -> str:
        value = value.strip().upper()
        if not COM_PORT_RE.match(value):
            raise ValueError("port must be a COM port value like COM3")
        return value

    @field_validator("ttymode")
    @classmethod
    def _ttymode_default(cls, value: Optional[str]) -> str:
        return (value or "").strip() or "raw"


def build_upsd_conf() -> str:
    return "LISTEN 127.0.0.1 3493\r\n"


def build_snmp_ups_conf(payload: SnmpSetupPayload) -> str:
    lines = [
        f"[{payload.ups_name}]",
        "    driver = snmp-ups",
        f"    port = {payload.port}",
        f"    mibs = {_config_value(payload.mibs)}",
        f"    community = {_config_value(payload.community)}",
        f"    snmp_version = {payload.snmp_version}",
        f"    pollfreq = {payload.pollfreq}",
    ]
    if payload.snmp_version == "v3":
        lines.append(f"    secLevel = {payload.sec_level}")
        if payload.sec_name:
            lines.append(f"    secName = {_config_value(payload.sec_name)}")
        if payload.auth_protocol:
            lines.append(f"    authProtocol = {payload.auth_protocol}")
        if payload.auth_password:
            lines.append(f"    authPassword = {_config_value(payload.auth_password)}")
        if payload.priv_protocol:
            lines.append(f"    privProtocol = {payload.priv_protocol}")
        if payload.priv_password:
            lines.append(f"    privPassword = {_config_value(payload.priv_password)}")
    return "\r\n".join(lines) + "\r\n"


def build_serial_ups_conf(payload: SerialSetupPayload) -> str:
    lines = [
        f"[{payload.ups_name}]",
        f"    driver = {payload.driver}",
        f"    port = {payload.port}",
    ]
    if payload.ttymode:
        lines.append(f"    ttymode = {_config_value(payload.ttymode)}")
    return "\r\n".join(lines) + "\r\n"


def validate_nut_folder(folder_path: str) -> FolderValidation:
    """Check that ``folder_path`` looks like a NUT for Windows installation."""
    folder = (folder_path or "").strip()
    if not folder:
        return FolderValidation(
            valid=False,
            missing=[f"{d}/" for d in REQUIRED_DIRS] + list(REQUIRED_FILES),
            writable=False,
        )
    missing = [f"{d}/" for d in REQUIRED_DIRS if not os.path.isdir(os.path.join(folder, d))]
    missing += [f for f in REQUIRED_FILES if not os.path.isfile(os.path.join(folder, *f.split("/")))]
    valid = not missing
    writable = valid and os.access(os.path.join(folder, "etc"), os.W_OK)
    return FolderValidation(valid=valid, missing=missing, writable=writable)


def driver_exists(folder: str, driver: str) -> bool:
    return any(os.path.isfile(p) for p in executable_candidates(folder, driver))


def list_serial_drivers(folder_path: str) -> List[str]:
    folder = (folder_path or "").strip()
    if not folder:
        return []
    return [driver for driver in SERIAL_DRIVERS if driver_exists(folder, driver)]


def _write_conf_files(folder: str, ups_conf: str) -> None:
    etc = os.path.join(folder, "etc")
    with open(os.path.join(etc, "upsd.conf"), "w", encoding="ascii", newline="") as fh:
        fh.write(build_upsd_conf())
    with open(os.path.join(etc, "ups.conf"), "w", encoding="ascii", newline="") as fh:
        fh.write(ups_conf)
    logger.info("Wrote NUT configuration to %s", etc)


def _prepare(payload_model, payload, driver_of, build_conf) -> SetupResult:
    try:
        try:
            normalized = payload_model.model_validate(payload)
        except ValidationError as e:
            raise InvalidArgumentError("; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())) from e
        validation = validate_nut_folder(normalized.folder_path)
        if not validation.valid:
            return SetupResult(success=False, error=f"Invalid NUT folder structure. Missing: {', '.join(validation.missing)}")
        driver = driver_of(normalized)
        if not driver_exists(normalized.folder_path, driver):
            return SetupResult(
                success=False,
                error=f"Missing required driver binary: bin/{driver}.exe or sbin/{driver}.exe",
            )
        _write_conf_files(normalized.folder_path, build_conf(normalized))
        return SetupResult(success=True)
    except (InvalidArgumentError, OSError) as e:
        logger.error("NUT setup failed: %s", e)
        return SetupResult(success=False, error=str(e))


def prepare_local_nut(payload: dict) -> SetupResult:
    """Write configuration for an SNMP UPS served by a local ``snmp-ups`` driver."""
    return _prepare(SnmpSetupPayload, payload, lambda p: "snmp-ups", build_snmp_ups_conf)


def prepare_local_driver(payload: dict) -> SetupResult:
    """Write configuration for a serial UPS."""
    return _prepare(SerialSetupPayload, payload, lambda p: p.driver, build_serial_ups_conf)


def parse_upsc_status(output: str) -> Optional[str]:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    for line in lines:
        match = re.match(r"^ups\.status\s*:\s*(.+)$", line, re.IGNORECASE)
        if match and match.group(1).strip():
            return match.group(1).strip()
    for line in lines:
        if re.match(r"^error:", line, re.IGNORECASE):
            continue
        if ":" not in line:
            return line
    return None


async def _probe_ups_status(upsc_path: str, ups_name: str) -> tuple[Optional[str], str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            upsc_path,
            f"{ups_name}@{UPSC_TARGET_HOST}",
            "ups.status",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=UPSC_QUERY_TIMEOUT)
    except (OSError, asyncio.TimeoutError) as e:
        return None, f"upsc query failed ({e or type(e).__name__})"
    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    status = parse_upsc_status(out) or parse_upsc_status(err)
    if status:
        return status, ""
    merged = " ".join(f"{out}\n{err}".split())[:180]
    return None, f"ups.status unavailable ({merged})" if merged else "ups.status unavailable"


async def wait_for_serial_driver_ready(
    folder_path: str,
    ups_name: str,
    timeout: float = SERIAL_DRIVER_READY_TIMEOUT,
    poll_interval: float = SERIAL_DRIVER_READY_POLL_INTERVAL,
) -> None:
    """
    Poll ``upsc`` until the driver reports a ``ups.status`` other than WAIT.

    Raises:
        InvalidArgumentError: On a missing folder, bad UPS name or missing upsc.
        OperationTimeoutError: If the driver is not ready before ``timeout``.
    """
    folder = (folder_path or "").strip()
    if not folder:
        raise InvalidArgumentError("folderPath is required to wait for serial driver readiness")
    name = validate_ups_name(ups_name)
    upsc_path = next((p for p in executable_candidates(folder, "upsc") if os.path.isfile(p)), None)
    if upsc_path is None:
        raise InvalidArgumentError("Missing required utility binary: bin/upsc.exe or sbin/upsc.exe")

    deadline = time.monotonic() + timeout
    last_reason = "ups.status is not available yet"
    while time.monotonic() <= deadline:
        status, reason = await _probe_ups_status(upsc_path, name)
        if status:
            if status.upper() != UPS_STATUS_WAIT_TOKEN:
                logger.info("Serial driver for '%s' ready (ups.status=%s)", name, status)
                return
            last_reason = f"ups.status is {UPS_STATUS_WAIT_TOKEN}"
        elif reason:
            last_reason = reason
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        await asyncio.sleep(min(poll_interval, remaining))

    raise OperationTimeoutError(f"Timed out waiting for serial driver initialization. Last check: {last_reason}")
