"""Configuration loader for dbsrvctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/dbsrvctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``DBSRVCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DBSRVCTL_CONNECT_TIMEOUT=60
    export DBSRVCTL_SYSTEMD__USER_MODE=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from .versions import InstallMethod

ENV_PREFIX = "DBSRVCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
DEFAULT_CONFIG_FILE = "/etc/dbsrvctl/config.yml"
SECTIONS = ("server", "systemd")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServerConfig:
    """Locations of the server binaries driven during upgrades."""

    bin_template: str = "edgedb-server-{major_version}"
    dump_bin: str = "edgedb"

    def server_bin(self, major_version: str) -> str:
        """Return the server executable for *major_version*."""
        return self.bin_template.format(major_version=major_version)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin_template": self.bin_template, "dump_bin": self.dump_bin}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path | None = None
    systemctl_bin: str = "systemctl"
    user_mode: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir) if self.unit_dir is not None else None,
            "systemctl_bin": self.systemctl_bin,
            "user_mode": self.user_mode,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for dbsrvctl."""

    config_file: Path
    data_dir: Path
    runtime_dir: Path
    logs_dir: Path
    templates_dir: Path
    default_method: InstallMethod
    connect_timeout: float
    stop_timeout: float
    admin_user: str
    admin_database: str
    server: ServerConfig
    systemd: SystemdConfig

    def instance_dir(self, name: str) -> Path:
        """Return the data directory of instance *name*."""
        return self.data_dir / name

    def dump_path(self, name: str) -> Path:
        """Return the path of the logical dump taken for instance *name*."""
        return self.data_dir / f"{name}.dump"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "data_dir": str(self.data_dir),
            "runtime_dir": str(self.runtime_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "default_method": self.default_method.value,
            "connect_timeout": self.connect_timeout,
            "stop_timeout": self.stop_timeout,
            "admin_user": self.admin_user,
            "admin_database": self.admin_database,
            "server": self.server.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": DEFAULT_CONFIG_FILE,
    "data_dir": "~/.local/share/dbsrvctl/data",
    "runtime_dir": "~/.local/share/dbsrvctl/run",
    "logs_dir": "~/.local/share/dbsrvctl/logs",
    "templates_dir": "/etc/dbsrvctl/templates",
    "default_method": "package",
    "connect_timeout": 30.0,
    "stop_timeout": 10.0,
    "admin_user": "edgedb",
    "admin_database": "edgedb",
    "server": {
        "bin_template": "edgedb-server-{major_version}",
        "dump_bin": "edgedb",
    },
    "systemd": {
        "unit_dir": None,
        "systemctl_bin": "systemctl",
        "user_mode": True,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_METHODS = {method.value for method in InstallMethod}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged = copy.deepcopy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)
    config_path = _determine_config_path(config_file, resolved_env)

    for layer, label in (
        (_load_yaml_file(config_path), f"file:{config_path}"),
        (_build_env_overrides(resolved_env), "environment"),
        (overrides or {}, "overrides"),
    ):
        _merge_layer(merged, layer, label)
    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    return Path(env.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE))


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    method = raw.get("default_method")
    if method is not None and str(method) not in ALLOWED_METHODS:
        allowed = ", ".join(sorted(ALLOWED_METHODS))
        raise ConfigError(f"Unsupported default_method '{method}'. Allowed: {allowed}.")

    server = raw.get("server")
    if server is not None:
        server_map = _as_dict(server, "server")
        unknown = set(server_map.keys()) - {"bin_template", "dump_bin"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown server configuration keys: {joined}.")
        template = server_map.get("bin_template")
        if template is not None and "{major_version}" not in str(template):
            raise ConfigError("server.bin_template must contain '{major_version}'.")

    systemd = raw.get("systemd")
    if systemd is not None:
        systemd_map = _as_dict(systemd, "systemd")
        unknown = set(systemd_map.keys()) - {"unit_dir", "systemctl_bin", "user_mode"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown systemd configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    server_mapping = _as_dict(raw.get("server"), "server")
    server = ServerConfig(
        bin_template=str(server_mapping.get("bin_template", "edgedb-server-{major_version}")),
        dump_bin=str(server_mapping.get("dump_bin", "edgedb")),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    unit_dir_value = systemd_mapping.get("unit_dir")
    systemd = SystemdConfig(
        unit_dir=_to_path(unit_dir_value) if unit_dir_value else None,
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        user_mode=_expect_bool(systemd_mapping.get("user_mode"), "systemd.user_mode", True),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        data_dir=_to_path(raw.get("data_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        default_method=InstallMethod(str(raw.get("default_method", "package"))),
        connect_timeout=_expect_positive_float(
            raw.get("connect_timeout"), "connect_timeout", default=30.0
        ),
        stop_timeout=_expect_positive_float(
            raw.get("stop_timeout"), "stop_timeout", default=10.0
        ),
        admin_user=str(raw.get("admin_user", "edgedb")),
        admin_database=str(raw.get("admin_database", "edgedb")),
        server=server,
        systemd=systemd,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    sections: dict[str, dict[str, object]] = {}
    for key, raw in env.items():
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        name, _, option = key[len(ENV_PREFIX) :].lower().partition("__")
        if not name:
            continue
        if option:
            sections.setdefault(name, {})[option] = _parse_env_value(raw)
        else:
            overrides[name] = _parse_env_value(raw)
    overrides.update(sections)
    return overrides


def _parse_env_value(raw: str) -> object:
    # Unparseable values stay plain strings.
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _merge_layer(merged: dict[str, object], layer: Mapping[str, object], label: str) -> None:
    for key, value in layer.items():
        if key in SECTIONS and value is not None:
            section = _as_dict(merged.get(key), key)
            section.update(_as_dict(value, f"{label}:{key}"))
            value = section
        merged[key] = value


def _to_path(value: object) -> Path:
    if not isinstance(value, (str, Path)):
        raise ConfigError(f"Expected a filesystem path. Got {value!r}.")
    return Path(value).expanduser()


def _expect_bool(value: object | None, label: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        numeric = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping) or not all(isinstance(key, str) for key in value):
        raise ConfigError(f"Expected {label} to be a mapping with string keys. Got {value!r}.")
    return dict(value)


__all__ = [
    "AppConfig",
    "ConfigError",
    "ServerConfig",
    "SystemdConfig",
    "load_config",
]
