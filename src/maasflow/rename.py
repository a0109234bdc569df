"""Hostname assignment keyed off a MAC address mapping.

The mapping is a plain ``{mac: hostname}`` document. When a machine carries a
MAC present in the mapping its hostname is updated through the MAAS
``update`` operation before the transition action runs.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from .models import Machine, ProcessingOptions, normalize_mac

if TYPE_CHECKING:
    from .providers.maas import NodeClient

LOGGER = logging.getLogger(__name__)


class MappingError(ValueError):
    """Raised when a MAC to hostname mapping is malformed."""


class RenameError(RuntimeError):
    """Raised when a hostname update is rejected."""


def parse_mappings(raw: Mapping[str, object] | None) -> dict[str, str]:
    """Validate *raw* and return a mapping keyed by normalised MAC address."""
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise MappingError(f"Hostname mapping must be a mapping. Got {type(raw).__name__}.")
    result: dict[str, str] = {}
    for mac, hostname in raw.items():
        if not isinstance(mac, str) or not mac.strip():
            raise MappingError(f"Mapping keys must be MAC address strings. Got {mac!r}.")
        if not isinstance(hostname, str) or not hostname.strip():
            raise MappingError(f"Hostname for {mac} must be a non-empty string.")
        result[normalize_mac(mac)] = hostname.strip()
    return result


def desired_hostname(machine: Machine, mappings: Mapping[str, str]) -> str | None:
    """Return the mapped hostname for the first known MAC of *machine*."""
    for mac in machine.mac_addresses:
        hostname = mappings.get(mac)
        if hostname:
            return hostname
    return None


def rename_if_needed(
    client: NodeClient,
    machine: Machine,
    options: ProcessingOptions,
) -> Machine:
    """Apply the mapped hostname to *machine* and return the (possibly renamed) snapshot."""
    hostname = desired_hostname(machine, options.mappings)
    if hostname is None:
        return machine
    if hostname == machine.hostname and not options.always_rename:
        return machine

    if options.preview:
        LOGGER.info("RENAME (preview): %s -> %s", machine.hostname, hostname)
        return machine

    LOGGER.info("RENAME: %s -> %s", machine.hostname, hostname)
    try:
        client.invoke(machine.system_id, "update", {"hostname": hostname})
    except Exception as exc:
        raise RenameError(
            f"Unable to rename '{machine.hostname}' to '{hostname}': {exc}"
        ) from exc
    return Machine(
        system_id=machine.system_id,
        hostname=hostname,
        zone=machine.zone,
        status=machine.status,
        substatus=machine.substatus,
        mac_addresses=machine.mac_addresses,
    )


__all__ = [
    "MappingError",
    "RenameError",
    "desired_hostname",
    "parse_mappings",
    "rename_if_needed",
]
