"""Transition table mapping an observed node status to the next action.

The table is authored by hand as an ordered list of records. It encodes a
verified subset of the edges in :data:`REFERENCE_GRAPH`; the graph is kept as
documentation and is never compiled into the table.

Lookup is keyed on the current status only. The ``target`` field is carried on
every record (all of them aim at ``Deployed``) but is ignored by
:func:`find_action`.
"""
from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .actions import ACQUIRE, ADMIN_STATE, COMMISSION, DEPLOY, DONE, FAIL, WAIT, Action
from .models import NodeStatus


class TransitionTableError(RuntimeError):
    """Raised when the transition table does not cover every status exactly once."""


class NoRouteError(LookupError):
    """Raised when no transition exists for a status."""

    def __init__(self, status: NodeStatus | str) -> None:
        """Store the status that could not be routed."""
        label = status.label if isinstance(status, NodeStatus) else status
        super().__init__(f"No route for status '{label}'.")
        self.status = status


@dataclass(frozen=True, slots=True)
class Transition:
    """One authored rule: when at ``current`` heading for ``target``, use ``action``."""

    target: NodeStatus
    current: NodeStatus
    action: Action


TRANSITIONS: tuple[Transition, ...] = (
    Transition(NodeStatus.DEPLOYED, NodeStatus.DEPLOYED, DONE),
    Transition(NodeStatus.DEPLOYED, NodeStatus.READY, ACQUIRE),
    Transition(NodeStatus.DEPLOYED, NodeStatus.ALLOCATED, DEPLOY),
    Transition(NodeStatus.DEPLOYED, NodeStatus.RETIRED, ADMIN_STATE),
    Transition(NodeStatus.DEPLOYED, NodeStatus.RESERVED, ADMIN_STATE),
    Transition(NodeStatus.DEPLOYED, NodeStatus.RELEASING, WAIT),
    Transition(NodeStatus.DEPLOYED, NodeStatus.DISK_ERASING, WAIT),
    Transition(NodeStatus.DEPLOYED, NodeStatus.DEPLOYING, WAIT),
    Transition(NodeStatus.DEPLOYED, NodeStatus.COMMISSIONING, WAIT),
    Transition(NodeStatus.DEPLOYED, NodeStatus.MISSING, FAIL),
    Transition(NodeStatus.DEPLOYED, NodeStatus.FAILED_RELEASING, FAIL),
    Transition(NodeStatus.DEPLOYED, NodeStatus.FAILED_DISK_ERASING, FAIL),
    Transition(NodeStatus.DEPLOYED, NodeStatus.FAILED_DEPLOYMENT, FAIL),
    Transition(NodeStatus.DEPLOYED, NodeStatus.BROKEN, FAIL),
    Transition(NodeStatus.DEPLOYED, NodeStatus.FAILED_COMMISSIONING, FAIL),
    Transition(NodeStatus.DEPLOYED, NodeStatus.NEW, COMMISSION),
)

# Full lifecycle graph. Kept for reference; the table above is maintained by hand.
REFERENCE_GRAPH = """
(New)->(Commissioning)
(Commissioning)->(FailedCommissioning)
(FailedCommissioning)->(New)
(Commissioning)->(Ready)
(Ready)->(Deploying)
(Ready)->(Allocated)
(Allocated)->(Deploying)
(Deploying)->(Deployed)
(Deploying)->(FailedDeployment)
(FailedDeployment)->(Broken)
(Deployed)->(Releasing)
(Releasing)->(FailedReleasing)
(FailedReleasing)->(Broken)
(Releasing)->(DiskErasing)
(DiskErasing)->(FailedDiskErasing)
(FailedDiskErasing)->(Broken)
(Releasing)->(Ready)
(DiskErasing)->(Ready)
(Broken)->(Ready)
"""

_EDGE_RE = re.compile(r"^\((?P<source>\w+)\)->\((?P<destination>\w+)\)$")


def find_action(
    current: NodeStatus,
    target: NodeStatus | None = None,
    *,
    table: Iterable[Transition] = TRANSITIONS,
) -> Action:
    """Return the action for the first record whose ``current`` matches."""
    del target  # lookup is keyed on the current status only
    for transition in table:
        if transition.current is current:
            return transition.action
    raise NoRouteError(current)


def validate_table(table: Sequence[Transition] = TRANSITIONS) -> None:
    """Ensure every :class:`NodeStatus` has exactly one entry in *table*."""
    counts = Counter(transition.current for transition in table)
    missing = [status.label for status in NodeStatus if counts[status] == 0]
    duplicates = [status.label for status, count in counts.items() if count > 1]
    problems: list[str] = []
    if missing:
        problems.append(f"missing: {', '.join(missing)}")
    if duplicates:
        problems.append(f"duplicated: {', '.join(sorted(duplicates))}")
    if problems:
        raise TransitionTableError(
            "Transition table must route every status exactly once ("
            + "; ".join(problems)
            + ")."
        )


def reference_edges(graph: str = REFERENCE_GRAPH) -> list[tuple[NodeStatus, NodeStatus]]:
    """Parse *graph* into ``(source, destination)`` status pairs."""
    edges: list[tuple[NodeStatus, NodeStatus]] = []
    for raw_line in graph.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _EDGE_RE.match(line)
        if match is None:
            raise TransitionTableError(f"Malformed reference edge: {line!r}")
        edges.append(
            (
                NodeStatus.from_label(match.group("source")),
                NodeStatus.from_label(match.group("destination")),
            )
        )
    return edges


__all__ = [
    "NoRouteError",
    "REFERENCE_GRAPH",
    "TRANSITIONS",
    "Transition",
    "TransitionTableError",
    "find_action",
    "reference_edges",
    "validate_table",
]
