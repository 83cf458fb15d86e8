from __future__ import annotations

import os
from datetime import date, datetime, time
from pathlib import Path
from typing import Mapping, TypeAlias
import tomllib

from pydantic import ValidationError

from tsbridge.commands import TimeoutClass
from tsbridge.exceptions import ConfigError
from tsbridge.schema import BridgeSettings
from tsbridge.supervisor import RestartPolicy

DEFAULT_CONFIG_NAME = "tsbridge.toml"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]

# (section, key) each environment variable overrides.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "TSBRIDGE_TSSERVER_PATH": ("backend", "tsserver_path"),
    "TSBRIDGE_NODE_PATH": ("backend", "node_path"),
    "TSBRIDGE_LOG_LEVEL": ("logging", "level"),
    "TSBRIDGE_LOG_FILE": ("logging", "file"),
}


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def env_text(name: str, *, default: str = "", environ: Mapping[str, str] | None = None) -> str:
    source = os.environ if environ is None else environ
    return source.get(name, default).strip()


def env_overrides(environ: Mapping[str, str] | None = None) -> TomlTable:
    overrides: dict[str, dict[str, TomlValue]] = {}
    for name, (section, key) in ENV_OVERRIDES.items():
        value = env_text(name, environ=environ)
        if value:
            overrides.setdefault(section, {})[key] = value
    return dict(overrides)


def merge_sections(base: Mapping[str, object], override: Mapping[str, object] | None) -> TomlTable:
    """Merge `override` into a copy of `base`, one level of sections deep."""
    merged: TomlTable = {}
    for name, section in base.items():
        merged[name] = dict(section) if isinstance(section, dict) else section
    if not override:
        return merged
    for name, section in override.items():
        current = merged.get(name)
        if isinstance(section, dict) and isinstance(current, dict):
            current.update({key: value for key, value in section.items() if value is not None})
        elif isinstance(section, dict):
            merged[name] = {key: value for key, value in section.items() if value is not None}
        # Non-table values at the top level are not settings.
    return merged


def load_settings(
    root: Path | None = None,
    config_path: Path | None = None,
    *,
    initialization_options: Mapping[str, object] | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> BridgeSettings:
    """Defaults < TOML < initializationOptions < environment < CLI flags."""
    data = load_config(root=root, config_path=config_path)
    if isinstance(initialization_options, dict):
        data = merge_sections(data, initialization_options)
    data = merge_sections(data, env_overrides(environ))
    data = merge_sections(data, cli_overrides)
    try:
        return BridgeSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid tsbridge configuration: {exc}") from exc


def backend_timeouts(settings: BridgeSettings) -> dict[TimeoutClass, float]:
    return {
        TimeoutClass.INTERACTIVE: settings.timeouts.interactive_seconds,
        TimeoutClass.NAVIGATION: settings.timeouts.navigation_seconds,
        TimeoutClass.PROJECT: settings.timeouts.project_seconds,
    }


def restart_policy(settings: BridgeSettings) -> RestartPolicy:
    return RestartPolicy(
        cooldown_seconds=settings.restart.cooldown_seconds,
        max_restarts=settings.restart.max_restarts,
        window_seconds=settings.restart.window_seconds,
    )
