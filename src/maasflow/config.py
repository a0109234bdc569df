"""Configuration loader for maasflow.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/maasflow/config.yml`` (or an override path).
3. Environment variables prefixed with ``MAASFLOW_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MAASFLOW_MAAS__URL=http://maas.example/MAAS
    export MAASFLOW_PERIOD=30s

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The ``filter`` and ``mappings`` settings accept either an
inline document (YAML or JSON) or ``@path`` referencing a file; ``$VARS`` in
the path are expanded.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover
    raise RuntimeError(
        "PyYAML is required to load maasflow configuration. Install with "
        "`pip install maasflow` or ensure PyYAML>=6.0 is available."
    ) from exc

from .filters import DEFAULT_FILTER, FilterError, FilterSpec, compile_filter, parse_filter_spec
from .models import ProcessingOptions
from .rename import MappingError, parse_mappings

ENV_PREFIX = "MAASFLOW_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class MaasConfig:
    """Connection settings for the MAAS server."""

    url: str = "http://localhost/MAAS"
    api_key: str = ""
    api_version: str = "1.0"
    timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with the API key redacted."""
        return {
            "url": self.url,
            "api_key": "***" if self.api_key else "",
            "api_version": self.api_version,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for maasflow."""

    config_file: Path
    maas: MaasConfig
    period: float
    filter: FilterSpec
    mappings: Mapping[str, str] = field(default_factory=dict)
    preview: bool = False
    verbose: bool = False
    always_rename: bool = False
    logs_dir: Path = Path("/var/log/maasflow")
    max_workers: int = 8
    inflight_ttl: float = 600.0

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "maas": self.maas.to_dict(),
            "period": self.period,
            "filter": self.filter.to_dict(),
            "mappings": dict(self.mappings),
            "preview": self.preview,
            "verbose": self.verbose,
            "always_rename": self.always_rename,
            "logs_dir": str(self.logs_dir),
            "max_workers": self.max_workers,
            "inflight_ttl": self.inflight_ttl,
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/maasflow/config.yml",
    "maas": {
        "url": "http://localhost/MAAS",
        "api_key": "",
        "api_version": "1.0",
        "timeout": 30.0,
    },
    "period": "15s",
    "filter": DEFAULT_FILTER,
    "mappings": {},
    "preview": False,
    "verbose": False,
    "always_rename": False,
    "logs_dir": "/var/log/maasflow",
    "max_workers": 8,
    "inflight_ttl": "10m",
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_MAAS_KEYS = {"url", "api_key", "api_version", "timeout"}
# Documents that may be given as a single value (inline text or @file) and
# must not be deep-merged key by key.
OPAQUE_KEYS = {"filter", "mappings"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(DEFAULTS["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, {key: value for key, value in overrides.items() if value is not None})

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def build_processing_options(config: AppConfig) -> ProcessingOptions:
    """Compile the filter and bundle the run-time settings for the engine."""
    try:
        machine_filter = compile_filter(config.filter)
    except FilterError as exc:
        raise ConfigError(str(exc)) from exc
    return ProcessingOptions(
        filter=machine_filter,
        preview=config.preview,
        verbose=config.verbose,
        always_rename=config.always_rename,
        mappings=dict(config.mappings),
        max_workers=config.max_workers,
        inflight_ttl=config.inflight_ttl,
    )


def parse_duration(value: object, label: str = "duration") -> float:
    """Parse a Go-style duration (``15s``, ``1m30s``, ``250ms``) into seconds."""
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration for {label}: {value!r}.")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ConfigError(f"Invalid duration for {label}: {value!r}.")
        position = 0
        seconds = 0.0
        for match in _DURATION_RE.finditer(text):
            if match.start() != position:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            position = match.end()
        if position != len(text):
            raise ConfigError(f"Invalid duration for {label}: {value!r}.")
    else:
        raise ConfigError(f"Invalid duration for {label}: {value!r}.")
    if seconds <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {value!r}.")
    return seconds


def load_document(value: object, label: str) -> object:
    """Resolve an inline document or an ``@path`` reference into data."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return None
    if text.startswith("@"):
        path = Path(os.path.expandvars(text[1:])).expanduser()
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Unable to open file '{path}' to load the {label}: {exc}") from exc
        source = str(path)
    else:
        source = "inline value"
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Unable to parse {label} from {source}: {exc}") from exc


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

    maas = _as_dict(raw.get("maas"), "maas")
    unknown = set(maas.keys()) - ALLOWED_MAAS_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown maas configuration keys: {joined}.")

    for flag in ("preview", "verbose", "always_rename"):
        value = raw.get(flag)
        if value is not None and not isinstance(value, bool):
            raise ConfigError(f"Expected {flag} to be a boolean. Got {value!r}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    maas_mapping = _as_dict(raw.get("maas"), "maas")
    maas = MaasConfig(
        url=str(maas_mapping.get("url") or "http://localhost/MAAS"),
        api_key=str(maas_mapping.get("api_key") or ""),
        api_version=str(maas_mapping.get("api_version") or "1.0"),
        timeout=_expect_positive_float(maas_mapping.get("timeout"), "maas.timeout", default=30.0),
    )

    try:
        filter_spec = parse_filter_spec(
            cast(Mapping[str, object] | None, load_document(raw.get("filter"), "filter"))
        )
    except FilterError as exc:
        raise ConfigError(str(exc)) from exc

    try:
        mappings = parse_mappings(
            cast(Mapping[str, object] | None, load_document(raw.get("mappings"), "mappings"))
        )
    except MappingError as exc:
        raise ConfigError(str(exc)) from exc

    max_workers = _positive_int(raw.get("max_workers"), "max_workers", default=8)

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        maas=maas,
        period=parse_duration(raw.get("period", "15s"), "period"),
        filter=filter_spec,
        mappings=mappings,
        preview=bool(raw.get("preview", False)),
        verbose=bool(raw.get("verbose", False)),
        always_rename=bool(raw.get("always_rename", False)),
        logs_dir=_to_path(raw.get("logs_dir")),
        max_workers=max_workers,
        inflight_ttl=parse_duration(raw.get("inflight_ttl", "10m"), "inflight_ttl"),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, raw_value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        path = [segment.lower() for segment in key[len(ENV_PREFIX) :].split("__") if segment]
        if not path:
            continue
        text = raw_value.strip()
        try:
            value = yaml.safe_load(text)
        except yaml.YAMLError:
            value = text
        node: MutableMapping[str, object] = overrides
        for segment in path[:-1]:
            child = node.setdefault(segment, {})
            if not isinstance(child, MutableMapping):
                raise ConfigError(
                    f"Environment variable {key} conflicts with a scalar at '{segment}'."
                )
            node = cast(MutableMapping[str, object], child)
        node[path[-1]] = value
    return overrides


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if (
            key not in OPAQUE_KEYS
            and isinstance(existing, MutableMapping)
            and isinstance(value, Mapping)
        ):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _positive_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ConfigError(f"Expected {label} to be an integer. Got {value!r}.")
    try:
        number = int(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    if number < 1:
        raise ConfigError(f"{label} must be at least 1. Got {number}.")
    return number


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
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
    "ConfigError",
    "MaasConfig",
    "build_processing_options",
    "load_config",
    "load_document",
    "parse_duration",
]
