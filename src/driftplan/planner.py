"""Builds reconciliation plans from configuration, provider and state."""

import dataclasses
import logging
from collections.abc import Iterable
from typing import Any

from driftplan.differ import detect_drift, diff_instance
from driftplan.errors import DriftError, NotFoundError, PlanError, UnresolvedReferenceError
from driftplan.graph import DependencyGraph, InstanceGraph, InstanceKey
from driftplan.models import (
    Action,
    Configuration,
    DriftEntry,
    InstanceAddress,
    Lifecycle,
    Plan,
    PlannedChange,
    ResourceAddress,
    StateRecord,
    contains_unknown,
)
from driftplan.providers.base import Provider
from driftplan.resolver import KnownValues, Resolver
from driftplan.state.store import StateStore

logger = logging.getLogger(__name__)


class Planner:
    """Plans the operations that reconcile actual state toward desired state.

    Construction validates the configuration (references, cycles, variable
    values) before anything touches the provider. ``plan`` reads from the
    provider but never mutates it or the state store.
    """

    def __init__(
        self,
        config: Configuration,
        provider: Provider,
        store: StateStore,
        variables: dict[str, Any] | None = None,
    ):
        self.config = config
        self.provider = provider
        self.store = store
        self.graph = DependencyGraph(config)
        self.resolver = Resolver(config, variables)
        self.instances: InstanceGraph | None = None
        self._keys: dict[ResourceAddress, list[InstanceKey]] = {}

    def _lifecycle(self, address: InstanceAddress) -> Lifecycle:
        node = self.config.resources.get(address.resource)
        return node.lifecycle if node is not None else Lifecycle()

    def _sensitive(self, address: InstanceAddress) -> frozenset[str]:
        node = self.config.resources.get(address.resource)
        return self.resolver.sensitive_attributes(node) if node is not None else frozenset()

    def refresh(
        self, records: dict[InstanceAddress, StateRecord], replace: set[InstanceAddress]
    ) -> tuple[dict[InstanceAddress, StateRecord], list[DriftEntry], list[DriftError]]:
        """Read every recorded object back from the provider and detect drift."""
        refreshed = {}
        drift: list[DriftEntry] = []
        conflicts: list[DriftError] = []

        for address in sorted(records):
            record = records[address]
            try:
                actual = self.provider.read(address.resource_type, record.resource_id)
            except NotFoundError:
                logger.warning("%s (%s) no longer exists", address, record.resource_id)
                drift.append(DriftEntry(address=address, deleted=True))
                continue

            changes = detect_drift(
                record.attributes,
                actual,
                self.config.schema_for(address.resource_type),
                self._lifecycle(address),
                self._sensitive(address),
            )
            if changes:
                logger.info("%s drifted: %s", address, ", ".join(c.path for c in changes))
                drift.append(DriftEntry(address=address, changes=changes))

            if address not in replace:
                actual_id = actual.get("id", record.resource_id)
                immutable = [c.path for c in changes if c.forces_replacement]
                if actual_id != record.resource_id:
                    conflicts.append(
                        DriftError(
                            str(address),
                            f"provider reports id {actual_id!r}, state records "
                            f"{record.resource_id!r}",
                            attributes=["id"],
                        )
                    )
                elif immutable:
                    conflicts.append(
                        DriftError(
                            str(address),
                            "immutable attributes changed outside of driftplan: "
                            + ", ".join(immutable),
                            attributes=immutable,
                        )
                    )

            refreshed[address] = dataclasses.replace(record, attributes=actual)

        return refreshed, drift, conflicts

    def plan(
        self,
        *,
        refresh: bool = True,
        destroy: bool = False,
        replace: Iterable[InstanceAddress] = (),
    ) -> Plan:
        """Compute the plan. Structural errors raise before any provider call."""
        replace = set(replace)
        records = self.store.snapshot()
        drift: list[DriftEntry] = []
        conflicts: list[DriftError] = []
        if refresh:
            records, drift, conflicts = self.refresh(records, replace)
        conflicted = {InstanceAddress.parse(c.address) for c in conflicts}

        if destroy:
            return self._destroy_plan(records, drift, conflicts, conflicted)

        for address in self.graph.data_order():
            self.resolver.resolve_data(self.config.data_sources[address], self.provider.read_data)

        self._keys = {
            address: self.resolver.instance_keys(self.config.resources[address])
            for address in self.graph.resource_order()
        }
        self.instances = self.graph.expand(self._keys)

        unknown_replacements = replace - set(self.instances.instances)
        if unknown_replacements:
            first = sorted(unknown_replacements)[0]
            raise UnresolvedReferenceError(str(first), address=str(first), attribute=None)

        changes: dict[InstanceAddress, PlannedChange] = {}

        def lookup(target: InstanceAddress) -> KnownValues:
            change = changes[target]
            desired = change.after or {}
            if change.action in (Action.CREATE, Action.REPLACE):
                return KnownValues(desired, complete=False)
            record = records.get(target)
            actual = record.attributes if record is not None else {}
            return KnownValues({**actual, **desired}, complete=True)

        for address in self.instances.order():
            node = self.instances.node(address)
            desired = self.resolver.resolve_instance(address, node, self._keys, lookup)
            record = records.get(address)
            if address in conflicted:
                change = PlannedChange(
                    address=address,
                    action=Action.CONFLICT,
                    before=record.attributes,
                    after=desired,
                    resource_id=record.resource_id,
                    config_keys=tuple(sorted(desired)),
                    reason="drift needs manual resolution",
                )
            else:
                change = diff_instance(
                    address,
                    desired,
                    record,
                    self.config.schema_for(address.resource_type),
                    node.lifecycle,
                    force_replace=address in replace,
                    sensitive=self._sensitive(address),
                )
            self._check_prevent_destroy(change, node.lifecycle)
            changes[address] = change

        dependencies = self.instances.dependency_map()
        for address in sorted(set(records) - set(changes)):
            record = records[address]
            changes[address] = self._delete_change(record, address in conflicted)
            dependencies[address] = frozenset(d for d in record.dependencies if d in records)

        ordered = [changes[a] for a in self.instances.order()]
        ordered += [changes[a] for a in sorted(set(changes) - set(self.instances.instances))]
        plan = Plan(changes=ordered, dependencies=dependencies, drift=drift, conflicts=conflicts)
        summary = [f"{n} to {a.value}" for a, n in plan.counts().items() if n and a != Action.NO_OP]
        logger.info("Plan: %s", ", ".join(summary) or "no changes")
        return plan

    def _delete_change(self, record: StateRecord, conflicted: bool) -> PlannedChange:
        if conflicted:
            return PlannedChange(
                address=record.address,
                action=Action.CONFLICT,
                before=record.attributes,
                resource_id=record.resource_id,
                reason="drift needs manual resolution",
            )
        lifecycle = self._lifecycle(record.address)
        change = diff_instance(
            record.address,
            None,
            record,
            self.config.schema_for(record.address.resource_type),
            lifecycle,
            sensitive=self._sensitive(record.address),
        )
        self._check_prevent_destroy(change, lifecycle)
        return change

    def _destroy_plan(
        self,
        records: dict[InstanceAddress, StateRecord],
        drift: list[DriftEntry],
        conflicts: list[DriftError],
        conflicted: set[InstanceAddress],
    ) -> Plan:
        changes = [self._delete_change(records[a], a in conflicted) for a in sorted(records)]
        dependencies = {
            address: frozenset(d for d in record.dependencies if d in records)
            for address, record in records.items()
        }
        return Plan(
            changes=changes,
            dependencies=dependencies,
            drift=drift,
            conflicts=conflicts,
            destroy=True,
        )

    @staticmethod
    def _check_prevent_destroy(change: PlannedChange, lifecycle: Lifecycle) -> None:
        if lifecycle.prevent_destroy and change.action.destructive:
            raise PlanError(
                f"plan would {change.action.value} this resource but lifecycle.prevent_destroy "
                "is set",
                address=str(change.address),
            )

    def prepare_attributes(self, change: PlannedChange, store: StateStore) -> dict[str, Any]:
        """Re-resolve an instance against current actual state, right before applying it."""
        if self.instances is None or change.address not in self.instances:
            return dict(change.after or {})
        node = self.instances.node(change.address)

        def lookup(target: InstanceAddress) -> KnownValues:
            record = store.get(target)
            if record is None:
                raise UnresolvedReferenceError(
                    str(target),
                    f"{target} has no recorded state",
                    address=str(change.address),
                )
            return KnownValues(record.attributes, complete=True)

        desired = self.resolver.resolve_instance(change.address, node, self._keys, lookup)
        if contains_unknown(desired):
            missing = sorted(k for k, v in desired.items() if contains_unknown(v))
            raise UnresolvedReferenceError(
                str(change.address),
                "values still unknown at apply time: " + ", ".join(missing),
                address=str(change.address),
            )
        if change.action == Action.UPDATE:
            desired = {k: v for k, v in desired.items() if not node.lifecycle.ignores(k)}
        return desired
