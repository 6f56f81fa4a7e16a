"""Process-wide govrun configuration: layered load and section reload."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, ClassVar

from govrun.config.loader import YAMLConfigLoader
from govrun.config.models import GovrunConfig

logger = logging.getLogger(__name__)

ConfigListener = Callable[[GovrunConfig, GovrunConfig], None]

# Sections a running process can pick up without reconnecting.
LIVE_SECTIONS: tuple[str, ...] = ("reconciler", "budget", "governance")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = dict(base)
    for key, value in updates.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce_env_value(raw: str) -> Any:
    value = raw.strip()
    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"null", "none"}:
        return None
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        pass
    if value[:1] in {"[", "{"}:
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _collect_env_overrides(prefix: str = "GOVRUN_") -> dict[str, Any]:
    """Turn GOVRUN_SECTION__FIELD variables into a nested override mapping."""
    overrides: dict[str, Any] = {}
    for key, raw_value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix) :]
        # GOVRUN_CONFIG names the file, it is not a setting
        if not suffix or suffix == "CONFIG":
            continue
        path = [p.strip().lower() for p in suffix.split("__") if p.strip()]
        if not path:
            continue
        cursor = overrides
        for part in path[:-1]:
            nested = cursor.get(part)
            if not isinstance(nested, dict):
                nested = {}
                cursor[part] = nested
            cursor = nested
        cursor[path[-1]] = _coerce_env_value(raw_value)
    return overrides


@dataclass(frozen=True)
class ReloadResult:
    """Top-level sections that differed between the live config and the file."""

    applied: tuple[str, ...] = ()
    restart_required: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.applied or self.restart_required)


class ConfigManager:
    """Thread-safe singleton holding the current :class:`GovrunConfig`.

    Precedence, lowest first: model defaults, govrun.yaml, GOVRUN_*
    environment variables, overrides passed to :meth:`load`. The reconciler
    and the guard never read this singleton; callers hand them a snapshot.
    """

    _instance: ClassVar[ConfigManager | None] = None
    _class_lock: ClassVar[Lock] = Lock()

    def __init__(self) -> None:
        self._lock = Lock()
        self._config = GovrunConfig()
        self._listeners: list[ConfigListener] = []
        self._config_path: str | None = None
        self._overrides: dict[str, Any] = {}

    @classmethod
    def instance(cls) -> ConfigManager:
        if cls._instance is not None:
            return cls._instance
        with cls._class_lock:
            if cls._instance is None:
                cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset_for_tests(cls) -> None:
        with cls._class_lock:
            cls._instance = None

    @staticmethod
    def _build(config_path: str | None, overrides: dict[str, Any]) -> GovrunConfig:
        layered = _deep_merge(YAMLConfigLoader.load_dict(config_path), _collect_env_overrides())
        return GovrunConfig.model_validate(_deep_merge(layered, overrides))

    @classmethod
    def load(
        cls,
        config_path: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> ConfigManager:
        """Build the config from every layer and replace the current one.

        Raises ConfigLoadError for unreadable YAML and pydantic's
        ValidationError for schema violations; the previous config stays.
        """
        manager = cls.instance()
        runtime_overrides = dict(overrides or {})
        new_config = cls._build(config_path, runtime_overrides)
        with manager._lock:
            old = manager._config
            manager._config = new_config
            manager._config_path = config_path
            manager._overrides = runtime_overrides
            listeners = list(manager._listeners)
        for callback in listeners:
            callback(old, new_config)
        return manager

    def get(self) -> GovrunConfig:
        with self._lock:
            return self._config

    @property
    def config_path(self) -> str | None:
        with self._lock:
            return self._config_path

    def on_change(self, callback: ConfigListener) -> None:
        """Call ``callback(old, new)`` whenever the live config is replaced."""
        with self._lock:
            self._listeners.append(callback)

    def reload(self) -> ReloadResult:
        """Re-read the same layers and swap in the changed live sections.

        Sections outside :data:`LIVE_SECTIONS` keep their running value and
        are reported in ``restart_required``. A file that fails to load or
        validate raises and leaves the current config untouched.
        """
        with self._lock:
            current = self._config
            path = self._config_path
            overrides = dict(self._overrides)
        candidate = self._build(path, overrides)

        applied: list[str] = []
        restart_required: list[str] = []
        for section in GovrunConfig.model_fields:
            if getattr(candidate, section) == getattr(current, section):
                continue
            if section in LIVE_SECTIONS:
                applied.append(section)
            else:
                restart_required.append(section)
        if restart_required:
            logger.warning("config_reload_restart_required sections=%s", ",".join(restart_required))
        result = ReloadResult(applied=tuple(applied), restart_required=tuple(restart_required))
        if not applied:
            return result

        updated = current.model_copy(update={section: getattr(candidate, section) for section in applied})
        with self._lock:
            # a concurrent load() wins over this reload
            if self._config is not current:
                return ReloadResult(restart_required=result.restart_required)
            self._config = updated
            listeners = list(self._listeners)
        logger.info("config_reloaded sections=%s path=%s", ",".join(applied), path)
        for callback in listeners:
            callback(current, updated)
        return result
