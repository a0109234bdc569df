"""Reconciliation loop driving machines through their provisioning lifecycle.

One cycle fetches a snapshot of every machine, keeps the ones selected by the
filter, looks up the next action for each from the transition table and
submits it to a worker pool without waiting for it to finish. No machine
state survives between cycles; the only cross-cycle bookkeeping is the
in-flight registry that stops a machine from being dispatched again while its
previous action is still running.
"""
from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .actions import Action
from .models import Machine, MachineDataError, ProcessingOptions
from .rename import rename_if_needed
from .transitions import TRANSITIONS, NoRouteError, Transition, find_action, validate_table

if TYPE_CHECKING:
    from .logging import StructuredLogger
    from .providers.maas import NodeClient

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MachineError:
    """A per-machine (or per-cycle) failure recorded for observability."""

    system_id: str
    hostname: str
    kind: str
    message: str

    def __str__(self) -> str:
        """Render the error as ``hostname: message``."""
        label = self.hostname or self.system_id or "cycle"
        return f"{label}: {self.message}"


@dataclass(slots=True)
class CycleReport:
    """Outcome of a single reconciliation pass."""

    errors: list[MachineError] = field(default_factory=list)
    dispatched: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    suppressed: list[str] = field(default_factory=list)
    completed_failures: list[MachineError] = field(default_factory=list)
    fetch_error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable summary."""
        return {
            "dispatched": [
                {"hostname": hostname, "action": action} for hostname, action in self.dispatched
            ],
            "skipped": list(self.skipped),
            "suppressed": list(self.suppressed),
            "errors": [str(error) for error in self.errors],
            "completed_failures": [str(error) for error in self.completed_failures],
            "fetch_error": self.fetch_error,
        }


class InFlightRegistry:
    """Thread-safe markers for machines whose action has not finished yet.

    Markers expire after *ttl* seconds so a hung action cannot block a machine
    forever.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        """Create an empty registry."""
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._markers: dict[str, tuple[object, float]] = {}

    def acquire(self, system_id: str) -> object | None:
        """Mark *system_id* busy, returning a token, or ``None`` if already busy."""
        now = self._clock()
        with self._lock:
            current = self._markers.get(system_id)
            if current is not None and now - current[1] < self._ttl:
                return None
            token = object()
            self._markers[system_id] = (token, now)
            return token

    def release(self, system_id: str, token: object) -> None:
        """Clear the marker for *system_id* if it is still owned by *token*."""
        with self._lock:
            current = self._markers.get(system_id)
            if current is not None and current[0] is token:
                del self._markers[system_id]

    def __contains__(self, system_id: object) -> bool:
        """Return ``True`` when *system_id* holds a live marker."""
        now = self._clock()
        with self._lock:
            current = self._markers.get(str(system_id))
            return current is not None and now - current[1] < self._ttl

    def __len__(self) -> int:
        """Return the number of markers currently held."""
        with self._lock:
            return len(self._markers)


class Reconciler:
    """Orchestrates fetch, filter, lookup and dispatch on a fixed cadence."""

    def __init__(
        self,
        client: NodeClient,
        options: ProcessingOptions,
        *,
        logger: StructuredLogger | None = None,
        table: Sequence[Transition] = TRANSITIONS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Validate the transition table and prepare the dispatch pool."""
        validate_table(table)
        self.client = client
        self.options = options
        self.table = tuple(table)
        self._logger = logger
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, options.max_workers),
            thread_name_prefix="maasflow-dispatch",
        )
        self.in_flight = InFlightRegistry(options.inflight_ttl, clock=clock)
        self._idle = threading.Condition()
        self._pending = 0
        self._dispatch_errors: list[MachineError] = []

        excludes = options.filter.unenforced_excludes
        if excludes:
            LOGGER.warning(
                "Exclude patterns are accepted but not enforced: %s", ", ".join(excludes)
            )

    # ------------------------------------------------------------------
    # Single pass
    # ------------------------------------------------------------------
    def run_once(self, machines: Sequence[Machine]) -> list[MachineError]:
        """Process a snapshot and return the per-machine errors it produced."""
        return self.reconcile(machines).errors

    def reconcile(self, machines: Sequence[Machine]) -> CycleReport:
        """Process a snapshot and return the full cycle report."""
        report = CycleReport()
        machine_filter = self.options.filter
        for machine in machines:
            if not machine_filter.matches(machine):
                LOGGER.info(
                    "ignoring node '%s' (zone '%s') as it didn't match the include filter",
                    machine.hostname,
                    machine.zone,
                )
                report.skipped.append(machine.hostname)
                continue

            try:
                status = machine.lifecycle_status
            except MachineDataError as exc:
                LOGGER.error("unable to determine status of '%s': %s", machine.hostname, exc)
                report.errors.append(_machine_error(machine, "status", str(exc)))
                continue

            try:
                action = find_action(status, table=self.table)
            except NoRouteError as exc:
                LOGGER.error("%s (node '%s')", exc, machine.hostname)
                report.errors.append(_machine_error(machine, "no-route", str(exc)))
                continue

            if self.options.preview:
                self._preview(machine, action, report)
                continue

            if self._dispatch(machine, action):
                report.dispatched.append((machine.hostname, action.name))
            else:
                LOGGER.info(
                    "skipping '%s'; previous action is still in flight", machine.hostname
                )
                report.suppressed.append(machine.hostname)
        return report

    def run_cycle(self) -> CycleReport:
        """Fetch a fresh snapshot and reconcile it."""
        if self._logger is None:
            return self._run_cycle()
        with self._logger.operation(
            "cycle",
            args={"preview": self.options.preview},
            target={"kind": "maas", "scope": "nodes"},
        ) as op:
            report = self._run_cycle()
            context = report.to_dict()
            if report.fetch_error is not None:
                op.error(
                    "Unable to fetch machine snapshot.",
                    errors=[report.fetch_error],
                    context=context,
                )
            elif report.errors or report.completed_failures:
                failures = [*report.errors, *report.completed_failures]
                op.warning(
                    "Cycle completed with machine errors.",
                    errors=[str(error) for error in failures],
                    changed=len(report.dispatched),
                    context=context,
                )
            else:
                op.success("Cycle completed.", changed=len(report.dispatched), context=context)
            return report

    def _run_cycle(self) -> CycleReport:
        completed = self.drain_dispatch_errors()
        try:
            machines = self.client.list_machines()
        except Exception as exc:
            LOGGER.error("unable to get the list of all nodes: %s", exc)
            message = f"unable to get the list of all nodes: {exc}"
            return CycleReport(
                errors=[MachineError(system_id="", hostname="", kind="fetch", message=message)],
                completed_failures=completed,
                fetch_error=message,
            )
        LOGGER.debug("Got list of %d nodes", len(machines))
        report = self.reconcile(machines)
        report.completed_failures = completed
        return report

    # ------------------------------------------------------------------
    # Periodic driver
    # ------------------------------------------------------------------
    def run(
        self,
        period: float,
        *,
        stop_event: threading.Event | None = None,
        max_cycles: int | None = None,
        on_cycle: Callable[[CycleReport], None] | None = None,
    ) -> int:
        """Run one immediate cycle, then one every *period* seconds.

        Returns the number of cycles executed. Preview mode stops after the
        first cycle. Otherwise the loop ends only when *stop_event* is set or
        *max_cycles* have run.
        """
        stop = stop_event or threading.Event()
        cycles = 0
        while True:
            started = time.monotonic()
            LOGGER.debug("query server (cycle %d)", cycles + 1)
            report = self.run_cycle()
            cycles += 1
            if on_cycle is not None:
                on_cycle(report)
            if self.options.preview:
                break
            if max_cycles is not None and cycles >= max_cycles:
                break
            elapsed = time.monotonic() - started
            if stop.wait(max(period - elapsed, 0.0)):
                break
        return cycles

    def wait_for_dispatches(self, timeout: float | None = None) -> bool:
        """Block until every dispatched action has finished; ``False`` on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def drain_dispatch_errors(self) -> list[MachineError]:
        """Return the failures of actions finished since the last call and forget them."""
        with self._idle:
            drained, self._dispatch_errors = self._dispatch_errors, []
        return drained

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and optionally wait for in-flight actions."""
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _preview(self, machine: Machine, action: Action, report: CycleReport) -> None:
        rename_if_needed(self.client, machine, self.options)
        if action.side_effects:
            LOGGER.info("PREVIEW: would %s '%s'", action.name, machine.hostname)
        else:
            action(self.client, machine)
        report.dispatched.append((machine.hostname, action.name))

    def _dispatch(self, machine: Machine, action: Action) -> bool:
        token = self.in_flight.acquire(machine.system_id)
        if token is None:
            return False
        LOGGER.debug("dispatching %s for '%s'", action.name, machine.hostname)
        with self._idle:
            self._pending += 1

        def _finished(done: concurrent.futures.Future[None]) -> None:
            self.in_flight.release(machine.system_id, token)
            exc = done.exception()
            with self._idle:
                if exc is not None:
                    LOGGER.error(
                        "action %s for '%s' failed: %s", action.name, machine.hostname, exc
                    )
                    self._dispatch_errors.append(_machine_error(machine, "dispatch", str(exc)))
                self._pending -= 1
                self._idle.notify_all()

        try:
            future = self._executor.submit(self._execute, machine, action)
        except RuntimeError:
            self.in_flight.release(machine.system_id, token)
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()
            raise
        future.add_done_callback(_finished)
        return True

    def _execute(self, machine: Machine, action: Action) -> None:
        current = rename_if_needed(self.client, machine, self.options)
        action(self.client, current)


def _machine_error(machine: Machine, kind: str, message: str) -> MachineError:
    return MachineError(
        system_id=machine.system_id,
        hostname=machine.hostname,
        kind=kind,
        message=message,
    )


__all__ = ["CycleReport", "InFlightRegistry", "MachineError", "Reconciler"]
