"""Filter engine selecting which machines are in scope for automation.

A filter document has the shape::

    {
        "hosts": {"include": ["node-.*"], "exclude": []},
        "zones": {"include": ["default"], "exclude": []},
    }

A machine is in scope only when its hostname matches at least one host
include pattern *and* its zone matches at least one zone include pattern.
Patterns are unanchored regular expressions (``re.search``). An empty include
list matches nothing.

Exclude patterns are validated and compiled but not enforced; they are
reported through :attr:`MachineFilter.unenforced_excludes` so callers can
warn about them.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from .models import Machine

SECTIONS = ("hosts", "zones")
SECTION_KEYS = ("include", "exclude")

DEFAULT_FILTER: dict[str, dict[str, list[str]]] = {
    "hosts": {"include": [], "exclude": []},
    "zones": {"include": ["default"], "exclude": []},
}


class FilterError(ValueError):
    """Raised when a filter document is malformed."""


@dataclass(frozen=True, slots=True)
class FilterSpec:
    """Raw (uncompiled) include/exclude pattern lists."""

    host_include: tuple[str, ...] = ()
    host_exclude: tuple[str, ...] = ()
    zone_include: tuple[str, ...] = ()
    zone_exclude: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, dict[str, list[str]]]:
        """Return the patterns in their configuration shape."""
        return {
            "hosts": {
                "include": list(self.host_include),
                "exclude": list(self.host_exclude),
            },
            "zones": {
                "include": list(self.zone_include),
                "exclude": list(self.zone_exclude),
            },
        }


@dataclass(frozen=True, slots=True)
class MachineFilter:
    """Compiled matchers deciding whether a machine is in scope."""

    spec: FilterSpec
    host_include: tuple[re.Pattern[str], ...]
    zone_include: tuple[re.Pattern[str], ...]
    host_exclude: tuple[re.Pattern[str], ...] = ()
    zone_exclude: tuple[re.Pattern[str], ...] = ()

    def matches_hostname(self, hostname: str) -> bool:
        """Return ``True`` when *hostname* matches any host include pattern."""
        return _matches_any(self.host_include, hostname)

    def matches_zone(self, zone: str) -> bool:
        """Return ``True`` when *zone* matches any zone include pattern."""
        return _matches_any(self.zone_include, zone)

    def matches(self, machine: Machine) -> bool:
        """Return ``True`` when *machine* is in scope."""
        return self.matches_hostname(machine.hostname) and self.matches_zone(machine.zone)

    @property
    def unenforced_excludes(self) -> tuple[str, ...]:
        """Exclude patterns that were configured but are not applied."""
        return tuple(
            [f"hosts:{pattern.pattern}" for pattern in self.host_exclude]
            + [f"zones:{pattern.pattern}" for pattern in self.zone_exclude]
        )


def parse_filter_spec(raw: Mapping[str, object] | None) -> FilterSpec:
    """Validate a decoded filter document and return a :class:`FilterSpec`."""
    if raw is None:
        raw = DEFAULT_FILTER
    if not isinstance(raw, Mapping):
        raise FilterError(
            f"Filter document must be a mapping. Got {type(raw).__name__}."
        )
    unknown = set(raw.keys()) - set(SECTIONS)
    if unknown:
        joined = ", ".join(sorted(str(key) for key in unknown))
        raise FilterError(f"Unknown filter sections: {joined}.")

    patterns: dict[str, tuple[str, ...]] = {}
    for section in SECTIONS:
        section_raw = raw.get(section)
        if section_raw is None:
            section_raw = {}
        if not isinstance(section_raw, Mapping):
            raise FilterError(f"Filter section '{section}' must be a mapping.")
        unknown_keys = set(section_raw.keys()) - set(SECTION_KEYS)
        if unknown_keys:
            joined = ", ".join(sorted(str(key) for key in unknown_keys))
            raise FilterError(f"Unknown keys for filter section '{section}': {joined}.")
        for key in SECTION_KEYS:
            patterns[f"{section}.{key}"] = _pattern_list(section_raw.get(key), f"{section}.{key}")

    return FilterSpec(
        host_include=patterns["hosts.include"],
        host_exclude=patterns["hosts.exclude"],
        zone_include=patterns["zones.include"],
        zone_exclude=patterns["zones.exclude"],
    )


def compile_filter(spec: FilterSpec) -> MachineFilter:
    """Compile every pattern in *spec*; malformed patterns raise :class:`FilterError`."""
    return MachineFilter(
        spec=spec,
        host_include=_compile_all(spec.host_include, "hosts.include"),
        zone_include=_compile_all(spec.zone_include, "zones.include"),
        host_exclude=_compile_all(spec.host_exclude, "hosts.exclude"),
        zone_exclude=_compile_all(spec.zone_exclude, "zones.exclude"),
    )


def build_filter(raw: Mapping[str, object] | None = None) -> MachineFilter:
    """Parse and compile *raw* in one step."""
    return compile_filter(parse_filter_spec(raw))


def _pattern_list(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise FilterError(f"Filter {label} must be a list of patterns.")
    result: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str):
            raise FilterError(
                f"Filter {label}[{index}] must be a string. Got {type(item).__name__}."
            )
        result.append(item)
    return tuple(result)


def _compile_all(patterns: Iterable[str], label: str) -> tuple[re.Pattern[str], ...]:
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise FilterError(
                f"Invalid regular expression '{pattern}' in filter {label}: {exc}"
            ) from exc
    return tuple(compiled)


def _matches_any(patterns: Iterable[re.Pattern[str]], value: str) -> bool:
    return any(pattern.search(value) for pattern in patterns)


__all__ = [
    "DEFAULT_FILTER",
    "FilterError",
    "FilterSpec",
    "MachineFilter",
    "build_filter",
    "compile_filter",
    "parse_filter_spec",
]
