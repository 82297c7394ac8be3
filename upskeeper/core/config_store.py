"""
Process-wide configuration store.

Owns the settings file (``app-settings.json`` in the data directory), which
holds a single key, ``settings``, with the serialized AppConfig. Updates are
validated, persisted atomically and then delivered to subscribers as
``(previous, next)`` pairs in subscription order.
"""

import asyncio
import inspect
import json
import logging
import os
import tempfile
from typing import Any, Awaitable, Callable, List, Optional, Union

import anyio

from ..errors import IOFailureError
from .config_schema import (
    AppConfig,
    apply_config_patch,
    default_app_config,
    normalize_stored_config,
    parse_config,
    parse_config_patch,
    serialize_config,
)

logger = logging.getLogger(__name__)

STORE_KEY = "settings"

ConfigListener = Callable[[AppConfig, AppConfig], Union[None, Awaitable[None]]]


def _read_json(path: str) -> Optional[Any]:
    if not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def _write_json_atomic(path: str, payload: Any) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".app-settings-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, sort_keys=True)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class ConfigStore:
    """
    Schema-validated configuration with observers.
    """

    def __init__(self, path: str):
        self.path = path
        self._config: AppConfig = default_app_config()
        self._listeners: List[ConfigListener] = []
        self._lock = asyncio.Lock()

    async def load(self, reset: bool = False, debug_level: str | None = None) -> AppConfig:
        """
        Load the stored config, normalizing it to defaults when invalid.

        Args:
            reset: Ignore the stored blob and start from defaults.
            debug_level: Optional ``debug.level`` override.
        """
        stored = None
        if reset:
            logger.warning("Settings reset requested; starting from defaults")
        else:
            try:
                blob = await anyio.to_thread.run_sync(_read_json, self.path)
            except (OSError, ValueError) as e:
                logger.warning("Could not read settings file %s: %s", self.path, e)
                blob = None
            if isinstance(blob, dict):
                stored = blob.get(STORE_KEY)

        config = normalize_stored_config(stored) if stored is not None else default_app_config()
        if debug_level is not None:
            config = config.model_copy(update={"debug": config.debug.model_copy(update={"level": debug_level})})
        self._config = config
        await self._persist(config)
        logger.info("Loaded settings from %s", self.path)
        return config

    def get(self) -> AppConfig:
        return self._config

    def subscribe(self, listener: ConfigListener) -> Callable[[], None]:
        """Register ``listener(previous, next)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set(self, full: Any) -> AppConfig:
        """Validate and replace the whole config."""
        async with self._lock:
            config = parse_config(full)
            return await self._commit(config)

    async def update(self, patch: Any) -> AppConfig:
        """
        Validate ``patch``, merge it over the current config and persist.

        Raises:
            ConfigValidationError: If the patch or the merged result is invalid.
                The current config stays in force.
        """
        async with self._lock:
            parsed = parse_config_patch(patch)
            config = apply_config_patch(self._config, parsed)
            return await self._commit(config)

    async def reset(self) -> AppConfig:
        async with self._lock:
            return await self._commit(default_app_config())

    async def _commit(self, config: AppConfig) -> AppConfig:
        previous = self._config
        await self._persist(config)
        self._config = config
        for listener in list(self._listeners):
            try:
                result = listener(previous, config)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Config listener %r failed", listener)
        return config

    async def _persist(self, config: AppConfig) -> None:
        try:
            await anyio.to_thread.run_sync(
                _write_json_atomic, self.path, {STORE_KEY: serialize_config(config)}
            )
        except OSError as e:
            raise IOFailureError(f"Failed to write settings file {self.path}: {e}") from e
