"""Data model shared by the reconciliation engine.

Machines are read-only snapshots of the MAAS node objects returned by the
``nodes`` listing. They are rebuilt every cycle and never cached.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .filters import MachineFilter


class MachineDataError(ValueError):
    """Raised when a node payload cannot be interpreted."""


class NodeStatus(IntEnum):
    """Detailed MAAS node status codes."""

    NEW = 0
    COMMISSIONING = 1
    FAILED_COMMISSIONING = 2
    MISSING = 3
    READY = 4
    RESERVED = 5
    DEPLOYED = 6
    RETIRED = 7
    BROKEN = 8
    DEPLOYING = 9
    ALLOCATED = 10
    FAILED_DEPLOYMENT = 11
    RELEASING = 12
    FAILED_RELEASING = 13
    DISK_ERASING = 14
    FAILED_DISK_ERASING = 15

    @property
    def label(self) -> str:
        """Return the CamelCase label used in the transition table."""
        return "".join(part.capitalize() for part in self.name.split("_"))

    @classmethod
    def from_code(cls, code: object) -> NodeStatus:
        """Translate a numeric status code into a :class:`NodeStatus`."""
        if isinstance(code, bool):
            raise MachineDataError(f"Unknown status code {code!r}.")
        try:
            return cls(int(code))  # type: ignore[call-overload]
        except (TypeError, ValueError) as exc:
            raise MachineDataError(f"Unknown status code {code!r}.") from exc

    @classmethod
    def from_label(cls, label: str) -> NodeStatus:
        """Look up a status by its CamelCase label."""
        for status in cls:
            if status.label == label:
                return status
        raise MachineDataError(f"Unknown status label {label!r}.")


@dataclass(slots=True, frozen=True)
class Machine:
    """Snapshot of a single MAAS node."""

    system_id: str
    hostname: str
    zone: str
    status: int | None = None
    substatus: int | None = None
    mac_addresses: tuple[str, ...] = ()

    @property
    def lifecycle_status(self) -> NodeStatus:
        """Return the detailed lifecycle status used for transition lookup."""
        code = self.substatus if self.substatus is not None else self.status
        if code is None:
            raise MachineDataError(f"Node '{self.hostname}' reports no status.")
        return NodeStatus.from_code(code)

    @classmethod
    def from_api(cls, payload: Mapping[str, object]) -> Machine:
        """Build a machine from a MAAS node JSON object."""
        system_id = payload.get("system_id")
        if not isinstance(system_id, str) or not system_id:
            raise MachineDataError("Node payload is missing 'system_id'.")
        hostname = payload.get("hostname")
        zone_raw = payload.get("zone")
        if isinstance(zone_raw, Mapping):
            zone = zone_raw.get("name", "")
        else:
            zone = zone_raw or ""
        return cls(
            system_id=system_id,
            hostname=str(hostname or ""),
            zone=str(zone),
            status=_optional_int(payload.get("status"), "status"),
            substatus=_optional_int(payload.get("substatus"), "substatus"),
            mac_addresses=_collect_macs(payload),
        )


@dataclass(slots=True, frozen=True)
class ProcessingOptions:
    """Resolved run-time settings threaded through every reconciliation cycle."""

    filter: MachineFilter
    preview: bool = False
    verbose: bool = False
    always_rename: bool = False
    mappings: Mapping[str, str] = field(default_factory=dict)
    max_workers: int = 8
    inflight_ttl: float = 600.0


def normalize_mac(value: str) -> str:
    """Return *value* as a lower-case, colon separated MAC address."""
    digits = "".join(ch for ch in value.lower() if ch in "0123456789abcdef")
    if len(digits) != 12:
        return value.strip().lower()
    return ":".join(digits[index : index + 2] for index in range(0, 12, 2))


def _optional_int(value: object, label: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise MachineDataError(f"Expected {label} to be an integer. Got {value!r}.")
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as exc:
        raise MachineDataError(f"Expected {label} to be an integer. Got {value!r}.") from exc


def _collect_macs(payload: Mapping[str, object]) -> tuple[str, ...]:
    macs: list[str] = []
    entries = payload.get("macaddress_set")
    if isinstance(entries, Sequence) and not isinstance(entries, (str, bytes)):
        for entry in entries:
            if isinstance(entry, Mapping) and isinstance(entry.get("mac_address"), str):
                macs.append(normalize_mac(entry["mac_address"]))
    interfaces = payload.get("interface_set")
    if isinstance(interfaces, Sequence) and not isinstance(interfaces, (str, bytes)):
        for entry in interfaces:
            if isinstance(entry, Mapping) and isinstance(entry.get("mac_address"), str):
                mac = normalize_mac(entry["mac_address"])
                if mac not in macs:
                    macs.append(mac)
    return tuple(macs)


__all__ = [
    "Machine",
    "MachineDataError",
    "NodeStatus",
    "ProcessingOptions",
    "normalize_mac",
]
