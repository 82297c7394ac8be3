"""
AppConfig schema.

The persisted user configuration is a tree of frozen Pydantic models.
Every section rejects unknown keys. A parallel tree of patch models, where
every field is optional, validates partial updates before they are merged.
Keys are camelCase on the wire (``upsName``, ``intervalMs``) and
snake_case in Python.
"""

import logging
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from ..errors import ConfigValidationError
from ..nut.mapping import DEFAULT_MAPPING

logger = logging.getLogger(__name__)

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Port = Annotated[int, Field(ge=1, le=65535)]
Percent = Annotated[int, Field(ge=1, le=100)]
TolerancePct = Annotated[float, Field(ge=0, le=100)]
DebugLevel = Literal["off", "error", "warn", "info", "debug", "trace"]
ShutdownMethod = Literal["sleep", "shutdown"]
ThemeMode = Literal["light", "dark", "system"]

DEFAULT_CONFIG_MAPPING: Dict[str, str] = {
    column: field
    for column, field in DEFAULT_MAPPING.items()
    if column not in ("ups_temperature", "ups_status_num")
}


class _Section(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class _PatchSection(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


# -- Full schema ---------------------------------------------------------------

class NutConfig(_Section):
    host: NonEmptyStr = "127.0.0.1"
    port: Port = 3493
    username: Optional[NonEmptyStr] = None
    password: Optional[NonEmptyStr] = None
    ups_name: NonEmptyStr = "snmpups"
    mapping: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_CONFIG_MAPPING))
    launch_local_components: bool = False
    local_nut_folder_path: Optional[NonEmptyStr] = None


class PollingConfig(_Section):
    interval_ms: int = Field(6000, ge=500, le=60000)


class DataConfig(_Section):
    retention_days: int = Field(30, ge=1, le=3650)


class BatteryConfig(_Section):
    warning_pct: Percent = 40
    shutdown_pct: Percent = 20
    warning_toast_enabled: bool = True
    shutdown_enabled: bool = False
    critical_alert_enabled: bool = True
    critical_shutdown_alert_enabled: bool = True
    shutdown_countdown_seconds: int = Field(45, ge=1, le=300)
    shutdown_method: ShutdownMethod = "sleep"

    @model_validator(mode="after")
    def _shutdown_below_warning(self):
        if self.shutdown_pct >= self.warning_pct:
            raise ValueError("battery.shutdownPct must be lower than battery.warningPct")
        return self


class DebugConfig(_Section):
    level: DebugLevel = "info"


class ThemeConfig(_Section):
    mode: ThemeMode = "system"


class I18nConfig(_Section):
    locale: NonEmptyStr = "system"


class DashboardWidget(_Section):
    source_column: NonEmptyStr
    display_name: NonEmptyStr
    icon_key: NonEmptyStr
    unit_override: Optional[NonEmptyStr] = None
    color_preset: Optional[NonEmptyStr] = None


class DashboardConfig(_Section):
    widgets: List[DashboardWidget] = Field(default_factory=list)


class WizardConfig(_Section):
    completed: bool = False


class LineConfig(_Section):
    nominal_voltage: float = Field(220, ge=1, le=500)
    nominal_frequency: float = Field(50, ge=1, le=100)
    voltage_tolerance_pos_pct: TolerancePct = 10
    voltage_tolerance_neg_pct: TolerancePct = 10
    frequency_tolerance_pos_pct: TolerancePct = 1
    frequency_tolerance_neg_pct: TolerancePct = 1
    alert_enabled: bool = False
    alert_cooldown_minutes: float = Field(5, ge=1, le=1440)


class StartupConfig(_Section):
    start_with_system: bool = False


class AppConfig(_Section):
    nut: NutConfig = Field(default_factory=NutConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    battery: BatteryConfig = Field(default_factory=BatteryConfig)
    debug: DebugConfig = Field(default_factory=DebugConfig)
    theme: ThemeConfig = Field(default_factory=ThemeConfig)
    i18n: I18nConfig = Field(default_factory=I18nConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    wizard: WizardConfig = Field(default_factory=WizardConfig)
    line: LineConfig = Field(default_factory=LineConfig)
    startup: StartupConfig = Field(default_factory=StartupConfig)


# -- Patch schema --------------------------------------------------------------

class NutConfigPatch(_PatchSection):
    host: Optional[NonEmptyStr] = None
    port: Optional[Port] = None
    username: Optional[NonEmptyStr] = None
    password: Optional[NonEmptyStr] = None
    ups_name: Optional[NonEmptyStr] = None
    mapping: Optional[Dict[str, str]] = None
    launch_local_components: Optional[bool] = None
    local_nut_folder_path: Optional[NonEmptyStr] = None


class PollingConfigPatch(_PatchSection):
    interval_ms: Optional[int] = Field(None, ge=500, le=60000)


class DataConfigPatch(_PatchSection):
    retention_days: Optional[int] = Field(None, ge=1, le=3650)


class BatteryConfigPatch(_PatchSection):
    # No cross-field rule here; it is checked after merging.
    warning_pct: Optional[Percent] = None
    shutdown_pct: Optional[Percent] = None
    warning_toast_enabled: Optional[bool] = None
    shutdown_enabled: Optional[bool] = None
    critical_alert_enabled: Optional[bool] = None
    critical_shutdown_alert_enabled: Optional[bool] = None
    shutdown_countdown_seconds: Optional[int] = Field(None, ge=1, le=300)
    shutdown_method: Optional[ShutdownMethod] = None


class DebugConfigPatch(_PatchSection):
    level: Optional[DebugLevel] = None


class ThemeConfigPatch(_PatchSection):
    mode: Optional[ThemeMode] = None


class I18nConfigPatch(_PatchSection):
    locale: Optional[NonEmptyStr] = None


class DashboardConfigPatch(_PatchSection):
    widgets: Optional[List[DashboardWidget]] = None


class WizardConfigPatch(_PatchSection):
    completed: Optional[bool] = None


class LineConfigPatch(_PatchSection):
    nominal_voltage: Optional[float] = Field(None, ge=1, le=500)
    nominal_frequency: Optional[float] = Field(None, ge=1, le=100)
    voltage_tolerance_pos_pct: Optional[TolerancePct] = None
    voltage_tolerance_neg_pct: Optional[TolerancePct] = None
    frequency_tolerance_pos_pct: Optional[TolerancePct] = None
    frequency_tolerance_neg_pct: Optional[TolerancePct] = None
    alert_enabled: Optional[bool] = None
    alert_cooldown_minutes: Optional[float] = Field(None, ge=1, le=1440)


class StartupConfigPatch(_PatchSection):
    start_with_system: Optional[bool] = None


class AppConfigPatch(_PatchSection):
    nut: Optional[NutConfigPatch] = None
    polling: Optional[PollingConfigPatch] = None
    data: Optional[DataConfigPatch] = None
    battery: Optional[BatteryConfigPatch] = None
    debug: Optional[DebugConfigPatch] = None
    theme: Optional[ThemeConfigPatch] = None
    i18n: Optional[I18nConfigPatch] = None
    dashboard: Optional[DashboardConfigPatch] = None
    wizard: Optional[WizardConfigPatch] = None
    line: Optional[LineConfigPatch] = None
    startup: Optional[StartupConfigPatch] = None


# -- Operations ----------------------------------------------------------------

def _format_validation_error(prefix: str, error: ValidationError) -> str:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in item['loc']) or '<root>'}: {item['msg']}"
        for item in error.errors()
    )
    return f"{prefix}: {problems}"


def default_app_config() -> AppConfig:
    return AppConfig()


def parse_config(payload: Any) -> AppConfig:
    """Validate a complete configuration."""
    if isinstance(payload, AppConfig):
        return payload
    try:
        return AppConfig.model_validate(payload)
    except ValidationError as e:
        raise ConfigValidationError(_format_validation_error("Invalid config", e)) from e


def parse_config_patch(payload: Any) -> AppConfigPatch:
    """Validate a partial configuration."""
    if isinstance(payload, AppConfigPatch):
        return payload
    try:
        return AppConfigPatch.model_validate(payload if payload is not None else {})
    except ValidationError as e:
        raise ConfigValidationError(_format_validation_error("Invalid config patch", e)) from e


def apply_config_patch(current: AppConfig, patch: AppConfigPatch) -> AppConfig:
    """
    Merge ``patch`` over ``current`` and validate the result.

    Sections are merged key by key; lists (dashboard widgets) and the NUT
    mapping are replaced wholesale. Raises ConfigValidationError when the
    merged config breaks a range or cross-field rule.
    """
    merged = current.model_dump()
    for section, section_patch in patch:
        if section_patch is None or section not in patch.model_fields_set:
            continue
        merged[section] = {**merged[section], **section_patch.model_dump(exclude_unset=True)}
    return parse_config(merged)


def normalize_stored_config(payload: Any) -> AppConfig:
    """Turn whatever was read from disk into a valid config, falling back to defaults."""
    try:
        patch = parse_config_patch(payload)
        return apply_config_patch(default_app_config(), patch)
    except ConfigValidationError as e:
        logger.warning("Stored settings are invalid, using defaults: %s", e)
        return default_app_config()


def serialize_config(config: AppConfig) -> Dict[str, Any]:
    return config.model_dump(mode="json", by_alias=True, exclude_none=True)
