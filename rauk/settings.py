"""Project settings from ``rauk.toml`` with command-line overrides.

Only the ``[general]`` table is read; keys use kebab-case::

    [general]
    host = "127.0.0.1"
    port = 6666
    halt-timeout = 10
    ktest-byteorder = "big"
    clock-hz = 16000000
"""

from __future__ import annotations

import dataclasses
import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Union

LOGGER = logging.getLogger("rauk.settings")

RAUK_CONFIG_TOML = "rauk.toml"
_BYTEORDERS = ("little", "big")


class SettingsError(ValueError):
    """Raised when ``rauk.toml`` holds a value of the wrong type."""


@dataclass
class RaukSettings:
    host: str = "127.0.0.1"
    port: int = 6666
    halt_timeout: float = 10.0
    connect_timeout: float = 2.0
    ktest_byteorder: str = "little"
    clock_hz: Optional[int] = None
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    output: Path = Path("rauk.json")


_FIELD_TYPES = {
    "host": str,
    "port": int,
    "halt_timeout": float,
    "connect_timeout": float,
    "ktest_byteorder": str,
    "clock_hz": int,
    "log_level": str,
    "log_file": Path,
    "output": Path,
}


def _convert(key: str, value: Any) -> Any:
    kind = _FIELD_TYPES[key]
    if isinstance(value, bool):
        raise SettingsError(f"{key}: expected {kind.__name__}, got boolean")
    if kind is float and isinstance(value, (int, float)):
        return float(value)
    if kind is Path and isinstance(value, str):
        return Path(value)
    if not isinstance(value, kind):
        raise SettingsError(f"{key}: expected {kind.__name__}, got {value!r}")
    return value


def settings_from_mapping(general: Mapping[str, Any], base: Optional[RaukSettings] = None) -> RaukSettings:
    values = {}
    for raw_key, value in general.items():
        key = raw_key.replace("-", "_")
        if key not in _FIELD_TYPES:
            LOGGER.warning("ignoring unknown setting %r", raw_key)
            continue
        values[key] = _convert(key, value)
    settings = dataclasses.replace(base or RaukSettings(), **values)
    if settings.ktest_byteorder not in _BYTEORDERS:
        raise SettingsError(f"ktest_byteorder must be one of {_BYTEORDERS}")
    return settings


def load_settings(project_dir: Union[str, os.PathLike, None] = None) -> RaukSettings:
    """Settings from ``<project_dir>/rauk.toml``, defaults when absent."""

    directory = Path(project_dir) if project_dir is not None else Path.cwd()
    config_path = directory / RAUK_CONFIG_TOML
    if not config_path.exists():
        return RaukSettings()
    try:
        with config_path.open("rb") as fh:
            document = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise SettingsError(f"{config_path}: {exc}") from exc
    general = document.get("general") or {}
    if not isinstance(general, Mapping):
        raise SettingsError(f"{config_path}: [general] must be a table")
    LOGGER.debug("loaded settings from %s", config_path)
    return settings_from_mapping(general)


def merge_cli_overrides(settings: RaukSettings, **overrides: Any) -> RaukSettings:
    """Return ``settings`` with every non-``None`` override applied."""
    values = {key: value for key, value in overrides.items() if value is not None}
    unknown = set(values) - set(_FIELD_TYPES)
    if unknown:
        raise SettingsError(f"unknown settings: {', '.join(sorted(unknown))}")
    return dataclasses.replace(settings, **values)


__all__ = [
    "RAUK_CONFIG_TOML",
    "SettingsError",
    "RaukSettings",
    "settings_from_mapping",
    "load_settings",
    "merge_cli_overrides",
]
