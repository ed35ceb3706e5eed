"""Executes a plan concurrently across independent branches of the dependency graph."""

import dataclasses
import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any

from driftplan.errors import ProviderError
from driftplan.models import (
    Action,
    ApplyResult,
    InstanceAddress,
    OperationOutcome,
    OperationStatus,
    Plan,
    PlannedChange,
    StateRecord,
)
from driftplan.providers.base import Provider
from driftplan.state.store import StateStore

logger = logging.getLogger(__name__)

PrepareFn = Callable[[PlannedChange, StateStore], dict[str, Any]]

DESTROY = "destroy"
APPLY = "apply"

# An operation split into phases: a replacement destroys, then creates.
Step = tuple[InstanceAddress, str]

STATUS_PRECEDENCE = (
    OperationStatus.FAILED,
    OperationStatus.BLOCKED,
    OperationStatus.CANCELLED,
    OperationStatus.SUCCEEDED,
)


def _planned_attributes(change: PlannedChange, store: StateStore) -> dict[str, Any]:
    return dict(change.after or {})


def _steps(change: PlannedChange) -> list[Step]:
    if change.action == Action.DELETE:
        return [(change.address, DESTROY)]
    if change.action == Action.REPLACE:
        return [(change.address, DESTROY), (change.address, APPLY)]
    return [(change.address, APPLY)]


class Executor:
    """Applies planned changes through a provider, recording results in a state store.

    No operation starts before everything it waits on has succeeded. When an
    operation fails its dependents are blocked, while unrelated branches keep
    running. ``cancel`` stops new submissions; in-flight operations finish.
    """

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        max_concurrent: int = 5,
        prepare: PrepareFn | None = None,
    ):
        self._provider = provider
        self._store = store
        self._max_concurrent = max_concurrent
        self._prepare = prepare or _planned_attributes
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop scheduling new operations."""
        if not self._cancelled.is_set():
            logger.warning("Cancellation requested; waiting for in-flight operations")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @staticmethod
    def ordering(plan: Plan) -> dict[Step, set[Step]]:
        """Map each step to the steps that must succeed before it.

        Creates, updates and the create half of a replacement wait for their
        dependencies. Destroys, including the destroy half of a replacement,
        wait for the destroys of everything that depended on them. A
        replacement creates only after its destroy.
        """
        changes = {c.address: c for c in plan.changes}
        waits_on: dict[Step, set[Step]] = {
            step: set() for change in changes.values() for step in _steps(change)
        }
        for address, change in changes.items():
            if (address, APPLY) in waits_on:
                for dependency in plan.dependencies.get(address, ()):
                    if (dependency, APPLY) in waits_on:
                        waits_on[(address, APPLY)].add((dependency, APPLY))
            if change.action == Action.REPLACE:
                waits_on[(address, APPLY)].add((address, DESTROY))
            if (address, DESTROY) in waits_on:
                for dependency in plan.dependencies.get(address, ()):
                    if (dependency, DESTROY) in waits_on:
                        waits_on[(dependency, DESTROY)].add((address, DESTROY))
        return waits_on

    def apply(self, plan: Plan) -> ApplyResult:
        """Execute every operation in the plan and return per-instance outcomes."""
        changes = {c.address: c for c in plan.changes}
        waits_on = self.ordering(plan)
        waited_by: dict[Step, set[Step]] = {step: set() for step in waits_on}
        for step, prerequisites in waits_on.items():
            for prerequisite in prerequisites:
                waited_by[prerequisite].add(step)

        status: dict[Step, OperationStatus] = {}
        errors: dict[Step, str] = {}
        for step in waits_on:
            if changes[step[0]].action == Action.NO_OP:
                status[step] = OperationStatus.SUCCEEDED
            else:
                status[step] = OperationStatus.PENDING

        def block_dependents(step: Step, reason: str) -> None:
            stack = list(waited_by[step])
            while stack:
                dependent = stack.pop()
                if status[dependent] != OperationStatus.PENDING:
                    continue
                status[dependent] = OperationStatus.BLOCKED
                errors[dependent] = reason
                logger.warning("%s blocked: %s", dependent[0], reason)
                stack.extend(waited_by[dependent])

        for entry in plan.drift:
            if entry.deleted and self._store.remove(entry.address) is not None:
                logger.info("%s: forgot record of vanished object", entry.address)

        for change in changes.values():
            if change.action == Action.NO_OP:
                self._record_refresh(change, plan)

        for address, change in sorted(changes.items()):
            if change.action == Action.CONFLICT:
                step = (address, APPLY)
                status[step] = OperationStatus.BLOCKED
                errors[step] = change.reason or "drift needs manual resolution"
                block_dependents(step, f"{address} has unresolved drift")

        with ThreadPoolExecutor(max_workers=self._max_concurrent) as pool:
            running: dict[Future, Step] = {}
            while True:
                if not self.cancelled:
                    for step in sorted(waits_on):
                        if status[step] != OperationStatus.PENDING:
                            continue
                        if all(status[p] == OperationStatus.SUCCEEDED for p in waits_on[step]):
                            status[step] = OperationStatus.IN_PROGRESS
                            logger.info("%s: %s started", step[0], self._label(step, changes))
                            future = pool.submit(self._execute, step, changes[step[0]], plan)
                            running[future] = step
                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    step = running.pop(future)
                    address = step[0]
                    try:
                        future.result()
                    except ProviderError as exc:
                        logger.warning("%s failed: %s", address, exc)
                        status[step] = OperationStatus.FAILED
                        errors[step] = str(exc)
                        block_dependents(step, f"dependency {address} failed")
                    except Exception as exc:
                        logger.exception("%s failed", address)
                        status[step] = OperationStatus.FAILED
                        errors[step] = str(exc)
                        block_dependents(step, f"dependency {address} failed")
                    else:
                        status[step] = OperationStatus.SUCCEEDED
                        logger.info("%s: %s complete", address, self._label(step, changes))

        for step, current in status.items():
            if current == OperationStatus.PENDING:
                if self.cancelled:
                    status[step] = OperationStatus.CANCELLED
                    errors[step] = "cancelled before start"
                else:
                    status[step] = OperationStatus.BLOCKED
                    errors[step] = "prerequisites did not complete"

        self._store.save()

        outcomes = {}
        for address, change in changes.items():
            steps = _steps(change)
            current = next(
                s for s in STATUS_PRECEDENCE if any(status[step] == s for step in steps)
            )
            error = next((errors[step] for step in steps if status[step] == current), None)
            outcomes[address] = OperationOutcome(
                address=address, action=change.action, status=current, error=error
            )
        return ApplyResult(outcomes=outcomes, cancelled=self.cancelled)

    @staticmethod
    def _label(step: Step, changes: dict[InstanceAddress, PlannedChange]) -> str:
        address, phase = step
        action = changes[address].action
        if action == Action.REPLACE:
            return f"replace ({phase})"
        return action.value

    def _record_refresh(self, change: PlannedChange, plan: Plan) -> None:
        """Persist refreshed attributes and current dependencies of an unchanged instance."""
        record = self._store.get(change.address)
        if record is None or change.before is None:
            return
        dependencies = tuple(sorted(plan.dependencies.get(change.address, ())))
        if record.attributes != change.before or record.dependencies != dependencies:
            self._store.put(
                dataclasses.replace(record, attributes=change.before, dependencies=dependencies)
            )

    def _execute(self, step: Step, change: PlannedChange, plan: Plan) -> None:
        address, phase = step
        dependencies = tuple(sorted(plan.dependencies.get(address, ())))
        with self._store.locked(address):
            if phase == DESTROY:
                self._provider.destroy(address.resource_type, change.resource_id)
                self._store.remove(address)
            elif change.action in (Action.CREATE, Action.REPLACE):
                self._create(change, self._prepare(change, self._store), dependencies)
            elif change.action == Action.UPDATE:
                self._update(change, self._prepare(change, self._store), dependencies)
            else:
                raise ValueError(f"{address}: cannot execute {change.action.value}")

    def _create(
        self,
        change: PlannedChange,
        attributes: dict[str, Any],
        dependencies: tuple[InstanceAddress, ...],
    ) -> None:
        address = change.address
        try:
            actual = self._provider.create(address.resource_type, attributes)
        except ProviderError as exc:
            if exc.partial_state and "id" in exc.partial_state:
                logger.warning("%s partially created; recording it as tainted", address)
                self._store.put(
                    StateRecord(
                        address=address,
                        resource_id=str(exc.partial_state["id"]),
                        attributes=dict(exc.partial_state),
                        config_keys=change.config_keys,
                        dependencies=dependencies,
                        tainted=True,
                    )
                )
            raise
        if "id" not in actual:
            raise ProviderError(f"{address}: provider returned no id")
        self._store.put(
            StateRecord(
                address=address,
                resource_id=str(actual["id"]),
                attributes=actual,
                config_keys=change.config_keys,
                dependencies=dependencies,
            )
        )

    def _update(
        self,
        change: PlannedChange,
        attributes: dict[str, Any],
        dependencies: tuple[InstanceAddress, ...],
    ) -> None:
        address = change.address
        previous = self._store.get(address)
        # Attributes configured at the last apply and now omitted are sent as None.
        before = change.before or {}
        for removed in change.changes:
            if removed.after is None and removed.path in before and removed.path not in attributes:
                attributes = {**attributes, removed.path: None}
        try:
            actual = self._provider.update(address.resource_type, change.resource_id, attributes)
        except ProviderError as exc:
            if exc.partial_state and previous is not None:
                logger.warning("%s partially updated; recording confirmed attributes", address)
                self._store.put(
                    StateRecord(
                        address=address,
                        resource_id=previous.resource_id,
                        attributes={**previous.attributes, **exc.partial_state},
                        config_keys=previous.config_keys,
                        dependencies=previous.dependencies,
                        tainted=previous.tainted,
                    )
                )
            raise
        self._store.put(
            StateRecord(
                address=address,
                resource_id=change.resource_id,
                attributes=actual,
                config_keys=change.config_keys,
                dependencies=dependencies,
            )
        )
