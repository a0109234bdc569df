"""Tests for the machine snapshot model."""
from __future__ import annotations

import pytest

from maasflow.models import Machine, MachineDataError, NodeStatus, normalize_mac


def test_status_labels_match_transition_names() -> None:
    """Labels are the CamelCase names used by the transition table."""
    assert NodeStatus.FAILED_DISK_ERASING.label == "FailedDiskErasing"
    assert NodeStatus.NEW.label == "New"
    assert NodeStatus.from_label("DiskErasing") is NodeStatus.DISK_ERASING


def test_status_codes_follow_maas_numbering() -> None:
    """Numeric codes line up with the MAAS node status constants."""
    assert NodeStatus.from_code(4) is NodeStatus.READY
    assert NodeStatus.from_code("10") is NodeStatus.ALLOCATED
    assert len(NodeStatus) == 16


@pytest.mark.parametrize("code", [99, -1, "ready", None, True])
def test_unknown_status_code_rejected(code: object) -> None:
    """Unknown codes raise a data error rather than guessing."""
    with pytest.raises(MachineDataError):
        NodeStatus.from_code(code)


def test_from_api_prefers_substatus_and_reads_zone_object() -> None:
    """The detailed substatus drives lookup; zone objects are flattened to their name."""
    machine = Machine.from_api(
        {
            "system_id": "node-abc",
            "hostname": "node-1",
            "zone": {"name": "rack-b", "description": ""},
            "status": 4,
            "substatus": 10,
            "macaddress_set": [{"mac_address": "AA-BB-CC-DD-EE-01"}],
            "interface_set": [
                {"mac_address": "aa:bb:cc:dd:ee:01"},
                {"mac_address": "aa:bb:cc:dd:ee:02"},
            ],
        }
    )

    assert machine.zone == "rack-b"
    assert machine.lifecycle_status is NodeStatus.ALLOCATED
    assert machine.mac_addresses == ("aa:bb:cc:dd:ee:01", "aa:bb:cc:dd:ee:02")


def test_from_api_falls_back_to_status() -> None:
    """Without a substatus the coarse status is used."""
    machine = Machine.from_api({"system_id": "x", "hostname": "h", "zone": "default", "status": 6})
    assert machine.lifecycle_status is NodeStatus.DEPLOYED


def test_from_api_requires_system_id() -> None:
    """Entries without an identifier cannot be acted upon."""
    with pytest.raises(MachineDataError):
        Machine.from_api({"hostname": "orphan"})


def test_missing_status_is_a_data_error() -> None:
    """A node reporting no status at all cannot be routed."""
    machine = Machine(system_id="x", hostname="h", zone="default")
    with pytest.raises(MachineDataError):
        _ = machine.lifecycle_status


def test_normalize_mac_variants() -> None:
    """MACs are normalised to lower-case colon form."""
    assert normalize_mac("AA-BB-CC-DD-EE-FF") == "aa:bb:cc:dd:ee:ff"
    assert normalize_mac("aabb.ccdd.eeff") == "aa:bb:cc:dd:ee:ff"
    assert normalize_mac(" not-a-mac ") == "not-a-mac"
