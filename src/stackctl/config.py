"""Configuration loader for stackctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/stackctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``STACKCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STACKCTL_PORTS__BASE=62000
    export STACKCTL_LISTING__PARALLEL=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .probe import ProbeProfile

ENV_PREFIX = "STACKCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_BEGIN_MARKER = "-----BEGIN AUTOMATIC STACKCTL CONFIG-----"
DEFAULT_END_MARKER = "-----END AUTOMATIC STACKCTL CONFIG-----"

DEFAULT_SERVICE_ENV_VARS: dict[str, str] = {
    "media": "MEDIA_SERVICE_REPLICAS",
    "redis-slave": "REDIS_RO_SERVICE_REPLICAS",
    "server": "OPENSLIDES_BACKEND_SERVICE_REPLICAS",
    "client": "OPENSLIDES_FRONTEND_SERVICE_REPLICAS",
    "autoupdate": "OPENSLIDES_AUTOUPDATE_SERVICE_REPLICAS",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation defaults."""

    base: int = 61000
    max: int = 65535
    max_retries: int = 25

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base, "max": self.max, "max_retries": self.max_retries}


@dataclass(frozen=True)
class ManagementToolConfig:
    """Location of the instance management tool binaries."""

    bin_dir: Path = Path("/usr/local/lib/openslides-manage/versions")
    default: str = "latest"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin_dir": str(self.bin_dir), "default": self.default}


@dataclass(frozen=True)
class ProxyConfig:
    """Reverse-proxy configuration file and reload settings."""

    config_file: Path = Path("/etc/haproxy/haproxy.cfg")
    backup_file: Path = Path("/etc/haproxy/haproxy.cfg.stackctl-bak")
    begin_marker: str = DEFAULT_BEGIN_MARKER
    end_marker: str = DEFAULT_END_MARKER
    reload_command: tuple[str, ...] = ("systemctl", "reload", "haproxy")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_file": str(self.config_file),
            "backup_file": str(self.backup_file),
            "begin_marker": self.begin_marker,
            "end_marker": self.end_marker,
            "reload_command": list(self.reload_command),
        }


@dataclass(frozen=True)
class ProbeConfig:
    """Probe profiles used for instance health checks."""

    fast: ProbeProfile
    patient: ProbeProfile

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"fast": self.fast.to_dict(), "patient": self.patient.to_dict()}


@dataclass(frozen=True)
class ListingConfig:
    """Fan-out settings for fleet listings."""

    parallel: bool = True
    max_workers: int = 8

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"parallel": self.parallel, "max_workers": self.max_workers}


@dataclass(frozen=True)
class AutoscaleConfig:
    """Raw threshold tables and env-file mapping for autoscaling.

    The tables are validated by :class:`stackctl.autoscale.ThresholdTable`
    when an autoscale run needs them, so a broken table only fails the
    commands that depend on it.
    """

    accounts_over: Mapping[object, object] | None = None
    reset_accounts_over: Mapping[object, object] | None = None
    service_env_vars: Mapping[str, str] | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "accounts_over": dict(self.accounts_over or {}),
            "reset_accounts_over": dict(self.reset_accounts_over or {}),
            "service_env_vars": dict(self.service_env_vars or {}),
        }


@dataclass(frozen=True)
class ReadinessConfig:
    """Polling intervals used while waiting for a fresh instance."""

    initial_delay: float = 20.0
    interval: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"initial_delay": self.initial_delay, "interval": self.interval}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stackctl."""

    config_file: Path
    instances_dir: Path
    logs_dir: Path
    compose_template: Path | None
    config_template: Path | None
    docker_bin: str
    management_tool: ManagementToolConfig
    ports: PortsConfig
    proxy: ProxyConfig
    probe: ProbeConfig
    listing: ListingConfig
    autoscale: AutoscaleConfig
    readiness: ReadinessConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "instances_dir": str(self.instances_dir),
            "logs_dir": str(self.logs_dir),
            "compose_template": str(self.compose_template) if self.compose_template else None,
            "config_template": str(self.config_template) if self.config_template else None,
            "orchestrator": {"docker_bin": self.docker_bin},
            "management_tool": self.management_tool.to_dict(),
            "ports": self.ports.to_dict(),
            "proxy": self.proxy.to_dict(),
            "probe": self.probe.to_dict(),
            "listing": self.listing.to_dict(),
            "autoscale": self.autoscale.to_dict(),
            "readiness": self.readiness.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/stackctl/config.yml",
    "instances_dir": "/srv/openslides/os4-instances",
    "logs_dir": "/var/log/stackctl",
    "compose_template": None,
    "config_template": None,
    "orchestrator": {
        "docker_bin": "docker",
    },
    "management_tool": {
        "bin_dir": "/usr/local/lib/openslides-manage/versions",
        "default": "latest",
    },
    "ports": {
        "base": 61000,
        "max": 65535,
        "max_retries": 25,
    },
    "proxy": {
        "config_file": "/etc/haproxy/haproxy.cfg",
        "backup_file": None,  # derived from config_file when absent
        "begin_marker": DEFAULT_BEGIN_MARKER,
        "end_marker": DEFAULT_END_MARKER,
        "reload_command": ["systemctl", "reload", "haproxy"],
    },
    "probe": {
        "health_path": "/system/action/health",
        "fast": {
            "connect_timeout": 1.0,
            "request_timeout": 1.0,
            "retries": 2,
            "retry_delay": 1.0,
        },
        "patient": {
            "connect_timeout": 5.0,
            "request_timeout": 60.0,
            "retries": 5,
            "retry_delay": 1.0,
        },
    },
    "listing": {
        "parallel": True,
        "max_workers": 8,
    },
    # Threshold tables use integer keys; they replace rather than merge.
    "autoscale": {
        "accounts_over": None,
        "reset_accounts_over": None,
        "service_env_vars": None,
    },
    "readiness": {
        "initial_delay": 20.0,
        "interval": 5.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "orchestrator": {"docker_bin"},
    "management_tool": {"bin_dir", "default"},
    "ports": {"base", "max", "max_retries"},
    "proxy": {"config_file", "backup_file", "begin_marker", "end_marker", "reload_command"},
    "probe": {"health_path", "fast", "patient"},
    "listing": {"parallel", "max_workers"},
    "autoscale": {"accounts_over", "reset_accounts_over", "service_env_vars"},
    "readiness": {"initial_delay", "interval"},
}
_PROFILE_KEYS = {"connect_timeout", "request_timeout", "retries", "retry_delay"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


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

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    probe_map = _as_dict(raw.get("probe"), "probe")
    for profile in ("fast", "patient"):
        profile_map = _as_dict(probe_map.get(profile), f"probe.{profile}")
        unknown = set(profile_map.keys()) - _PROFILE_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown probe.{profile} keys: {joined}.")

    autoscale_map = _as_dict(raw.get("autoscale"), "autoscale")
    for table in ("accounts_over", "reset_accounts_over"):
        value = autoscale_map.get(table)
        if value is not None and not isinstance(value, Mapping):
            raise ConfigError(
                f"Expected autoscale.{table} to be a mapping. Got {type(value).__name__}."
            )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    instances_dir = _to_path(raw.get("instances_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    compose_template = _optional_path(raw.get("compose_template"), "compose_template")
    config_template = _optional_path(raw.get("config_template"), "config_template")

    orchestrator_mapping = _as_dict(raw.get("orchestrator"), "orchestrator")
    docker_bin = str(orchestrator_mapping.get("docker_bin", "docker"))

    tool_mapping = _as_dict(raw.get("management_tool"), "management_tool")
    management_tool = ManagementToolConfig(
        bin_dir=_to_path(
            tool_mapping.get("bin_dir", "/usr/local/lib/openslides-manage/versions")
        ),
        default=str(tool_mapping.get("default", "latest")),
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        base=_expect_int(ports_mapping.get("base"), "ports.base", default=61000),
        max=_expect_int(ports_mapping.get("max"), "ports.max", default=65535),
        max_retries=_expect_int(
            ports_mapping.get("max_retries"), "ports.max_retries", default=25
        ),
    )
    if ports.base < 1 or ports.base >= ports.max:
        raise ConfigError("ports.base must be positive and below ports.max.")
    if ports.max > 65535:
        raise ConfigError("ports.max must not exceed 65535.")
    if ports.max_retries < 0:
        raise ConfigError("ports.max_retries must be non-negative.")

    proxy_mapping = _as_dict(raw.get("proxy"), "proxy")
    proxy_file = _to_path(proxy_mapping.get("config_file", "/etc/haproxy/haproxy.cfg"))
    backup_value = proxy_mapping.get("backup_file")
    proxy_backup = (
        _to_path(backup_value)
        if backup_value
        else proxy_file.with_name(f"{proxy_file.name}.stackctl-bak")
    )
    reload_raw = proxy_mapping.get("reload_command", ["systemctl", "reload", "haproxy"])
    if isinstance(reload_raw, str):
        reload_command = tuple(reload_raw.split())
    else:
        reload_command = tuple(
            str(part) for part in _as_sequence(reload_raw, "proxy.reload_command")
        )
    begin_marker = str(proxy_mapping.get("begin_marker", DEFAULT_BEGIN_MARKER)).strip()
    end_marker = str(proxy_mapping.get("end_marker", DEFAULT_END_MARKER)).strip()
    if not begin_marker or not end_marker or begin_marker == end_marker:
        raise ConfigError("proxy.begin_marker and proxy.end_marker must be distinct and non-empty.")
    proxy = ProxyConfig(
        config_file=proxy_file,
        backup_file=proxy_backup,
        begin_marker=begin_marker,
        end_marker=end_marker,
        reload_command=reload_command,
    )

    probe_mapping = _as_dict(raw.get("probe"), "probe")
    health_path = str(probe_mapping.get("health_path", "/system/action/health"))
    if not health_path.startswith("/"):
        raise ConfigError("probe.health_path must start with '/'.")
    probe = ProbeConfig(
        fast=_build_profile(
            "fast",
            _as_dict(probe_mapping.get("fast"), "probe.fast"),
            health_path=health_path,
            skip_health=True,
        ),
        patient=_build_profile(
            "patient",
            _as_dict(probe_mapping.get("patient"), "probe.patient"),
            health_path=health_path,
            skip_health=False,
        ),
    )

    listing_mapping = _as_dict(raw.get("listing"), "listing")
    listing = ListingConfig(
        parallel=bool(listing_mapping.get("parallel", True)),
        max_workers=_expect_int(
            listing_mapping.get("max_workers"), "listing.max_workers", default=8
        ),
    )
    if listing.max_workers < 1:
        raise ConfigError("listing.max_workers must be at least 1.")

    autoscale_mapping = _as_dict(raw.get("autoscale"), "autoscale")
    env_vars_raw = autoscale_mapping.get("service_env_vars")
    service_env_vars = (
        {
            str(key): str(value)
            for key, value in _as_dict(env_vars_raw, "autoscale.service_env_vars").items()
        }
        if env_vars_raw is not None
        else dict(DEFAULT_SERVICE_ENV_VARS)
    )
    autoscale = AutoscaleConfig(
        accounts_over=cast(Mapping[object, object] | None, autoscale_mapping.get("accounts_over")),
        reset_accounts_over=cast(
            Mapping[object, object] | None, autoscale_mapping.get("reset_accounts_over")
        ),
        service_env_vars=service_env_vars,
    )

    readiness_mapping = _as_dict(raw.get("readiness"), "readiness")
    readiness = ReadinessConfig(
        initial_delay=_expect_non_negative_float(
            readiness_mapping.get("initial_delay"), "readiness.initial_delay", default=20.0
        ),
        interval=_expect_positive_float(
            readiness_mapping.get("interval"), "readiness.interval", default=5.0
        ),
    )

    return AppConfig(
        config_file=config_file,
        instances_dir=instances_dir,
        logs_dir=logs_dir,
        compose_template=compose_template,
        config_template=config_template,
        docker_bin=docker_bin,
        management_tool=management_tool,
        ports=ports,
        proxy=proxy,
        probe=probe,
        listing=listing,
        autoscale=autoscale,
        readiness=readiness,
    )


def _build_profile(
    name: str,
    mapping: Mapping[str, object],
    *,
    health_path: str,
    skip_health: bool,
) -> ProbeProfile:
    defaults = _as_dict(_as_dict(DEFAULTS["probe"], "probe")[name], f"probe.{name}")
    label = f"probe.{name}"
    retries = _expect_int(
        mapping.get("retries"), f"{label}.retries", default=cast(int, defaults["retries"])
    )
    if retries < 0:
        raise ConfigError(f"{label}.retries must be non-negative.")
    return ProbeProfile(
        name=name,
        connect_timeout=_expect_positive_float(
            mapping.get("connect_timeout"),
            f"{label}.connect_timeout",
            default=cast(float, defaults["connect_timeout"]),
        ),
        request_timeout=_expect_positive_float(
            mapping.get("request_timeout"),
            f"{label}.request_timeout",
            default=cast(float, defaults["request_timeout"]),
        ),
        retries=retries,
        retry_delay=_expect_non_negative_float(
            mapping.get("retry_delay"),
            f"{label}.retry_delay",
            default=cast(float, defaults["retry_delay"]),
        ),
        health_path=health_path,
        skip_health=skip_health,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object, label: str) -> Path | None:
    if value in (None, ""):
        return None
    if isinstance(value, (str, Path)):
        return _to_path(value)
    raise ConfigError(f"{label} must be a string, Path, or null.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "AutoscaleConfig",
    "ConfigError",
    "DEFAULT_SERVICE_ENV_VARS",
    "ListingConfig",
    "ManagementToolConfig",
    "PortsConfig",
    "ProbeConfig",
    "ProxyConfig",
    "ReadinessConfig",
    "load_config",
]
