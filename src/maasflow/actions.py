"""Actions invoked to move a machine towards its target status.

Each action is a callable ``(client, machine) -> None`` that raises
:class:`ActionError` when the remote operation is rejected. Actions do not
wait for MAAS to finish the operation and never retry.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .models import Machine

if TYPE_CHECKING:
    from .providers.maas import NodeClient

LOGGER = logging.getLogger(__name__)


class ActionError(RuntimeError):
    """Raised when an action fails against the node-management client."""

    def __init__(self, action: str, machine: Machine, message: str) -> None:
        """Record the failing action and machine alongside the message."""
        super().__init__(f"{action} failed for '{machine.hostname}': {message}")
        self.action = action
        self.machine = machine


@dataclass(frozen=True, slots=True)
class Action:
    """A named operation that advances (or deliberately ignores) a machine."""

    name: str
    run: Callable[[NodeClient, Machine], None]
    side_effects: bool = False

    def __call__(self, client: NodeClient, machine: Machine) -> None:
        """Invoke the action."""
        self.run(client, machine)


def _invoke(
    client: NodeClient,
    action: str,
    machine: Machine,
    system_id: str | None,
    operation: str,
    params: dict[str, str],
) -> None:
    try:
        client.invoke(system_id, operation, params)
    except Exception as exc:
        raise ActionError(action, machine, str(exc)) from exc


def _acquire(client: NodeClient, machine: Machine) -> None:
    LOGGER.info("ACQUIRE: %s", machine.hostname)
    _invoke(client, "acquire", machine, None, "acquire", {"name": machine.hostname})


def _commission(client: NodeClient, machine: Machine) -> None:
    LOGGER.info("COMMISSION: %s", machine.hostname)
    _invoke(client, "commission", machine, machine.system_id, "commission", {})


def _deploy(client: NodeClient, machine: Machine) -> None:
    LOGGER.info("DEPLOY: %s", machine.hostname)
    _invoke(client, "deploy", machine, machine.system_id, "start", {})


def _wait(client: NodeClient, machine: Machine) -> None:
    LOGGER.info("WAIT: %s", machine.hostname)


def _fail(client: NodeClient, machine: Machine) -> None:
    LOGGER.warning("FAIL: %s needs operator attention", machine.hostname)


def _admin_state(client: NodeClient, machine: Machine) -> None:
    LOGGER.info("ADMIN: %s", machine.hostname)


def _done(client: NodeClient, machine: Machine) -> None:
    LOGGER.info("COMPLETE: %s", machine.hostname)


ACQUIRE = Action("acquire", _acquire, side_effects=True)
COMMISSION = Action("commission", _commission, side_effects=True)
DEPLOY = Action("deploy", _deploy, side_effects=True)
WAIT = Action("wait", _wait)
FAIL = Action("fail", _fail)
ADMIN_STATE = Action("admin-state", _admin_state)
DONE = Action("done", _done)

ALL_ACTIONS: tuple[Action, ...] = (
    ACQUIRE,
    COMMISSION,
    DEPLOY,
    WAIT,
    FAIL,
    ADMIN_STATE,
    DONE,
)


__all__ = [
    "ACQUIRE",
    "ADMIN_STATE",
    "ALL_ACTIONS",
    "Action",
    "ActionError",
    "COMMISSION",
    "DEPLOY",
    "DONE",
    "FAIL",
    "WAIT",
]
