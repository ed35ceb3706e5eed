"""Tests for concurrent plan execution."""

import threading
import time

from driftplan.errors import ProviderError
from driftplan.executor import APPLY, DESTROY, Executor
from driftplan.models import (
    Action,
    DriftEntry,
    InstanceAddress,
    OperationStatus,
    Plan,
    PlannedChange,
    StateRecord,
)
from driftplan.providers.memory import InMemoryProvider

A = InstanceAddress("bucket", "a")
B = InstanceAddress("bucket", "b")
C = InstanceAddress("bucket", "c")
D = InstanceAddress("queue", "d")


def _create(address, **attributes):
    return PlannedChange(
        address=address,
        action=Action.CREATE,
        after=attributes,
        config_keys=tuple(sorted(attributes)),
    )


def _chain_plan():
    """a <- b <- c, plus an unrelated queue d."""
    return Plan(
        changes=[_create(A, n=1), _create(B, n=2), _create(C, n=3), _create(D, n=4)],
        dependencies={A: frozenset(), B: frozenset({A}), C: frozenset({B}), D: frozenset()},
    )


class FailingProvider(InMemoryProvider):
    """Fails every call for the given attribute value."""

    def __init__(self, fail_on, partial=False):
        super().__init__()
        self.fail_on = fail_on
        self.partial = partial

    def create(self, resource_type, attributes):
        if attributes.get("n") == self.fail_on:
            partial_state = {"id": "half-made", "n": self.fail_on} if self.partial else None
            raise ProviderError("quota exceeded", partial_state=partial_state)
        return super().create(resource_type, attributes)


def test_creates_run_in_dependency_order(store):
    provider = InMemoryProvider()
    calls = []
    original = provider.create

    def tracking_create(resource_type, attributes):
        calls.append(attributes["n"])
        return original(resource_type, attributes)

    provider.create = tracking_create
    result = Executor(provider, store).apply(_chain_plan())

    assert result.ok
    assert calls.index(1) < calls.index(2) < calls.index(3)
    assert store.get(C).dependencies == (B,)
    assert store.payload is not None


def test_failure_blocks_dependents_but_not_unrelated_branches(store):
    result = Executor(FailingProvider(fail_on=2), store).apply(_chain_plan())

    assert result.outcomes[A].status == OperationStatus.SUCCEEDED
    assert result.outcomes[B].status == OperationStatus.FAILED
    assert "quota exceeded" in result.outcomes[B].error
    assert result.outcomes[C].status == OperationStatus.BLOCKED
    assert result.outcomes[D].status == OperationStatus.SUCCEEDED
    assert not result.ok
    assert B not in store
    assert A in store


def test_partial_create_is_recorded_as_tainted(store):
    Executor(FailingProvider(fail_on=2, partial=True), store).apply(_chain_plan())

    record = store.get(B)
    assert record.tainted
    assert record.resource_id == "half-made"


def test_unexpected_exception_fails_the_operation(store):
    provider = InMemoryProvider()

    def broken_create(resource_type, attributes):
        raise RuntimeError("boom")

    provider.create = broken_create
    plan = Plan(changes=[_create(A, n=1)], dependencies={A: frozenset()})
    result = Executor(provider, store).apply(plan)
    assert result.outcomes[A].status == OperationStatus.FAILED
    assert result.outcomes[A].error == "boom"


def test_deletes_run_in_reverse_dependency_order(store):
    provider = InMemoryProvider()
    for address in (A, B):
        actual = provider.create("bucket", {"name": address.name})
        store.put(StateRecord(address=address, resource_id=actual["id"], attributes=actual))
    order = []
    original = provider.destroy

    def tracking_destroy(resource_type, resource_id):
        order.append(resource_id)
        time.sleep(0.01)
        original(resource_type, resource_id)

    provider.destroy = tracking_destroy
    plan = Plan(
        changes=[
            PlannedChange(address=A, action=Action.DELETE, resource_id=store.get(A).resource_id),
            PlannedChange(address=B, action=Action.DELETE, resource_id=store.get(B).resource_id),
        ],
        dependencies={A: frozenset(), B: frozenset({A})},
        destroy=True,
    )
    assert Executor.ordering(plan) == {(A, DESTROY): {(B, DESTROY)}, (B, DESTROY): set()}

    result = Executor(provider, store, max_concurrent=2).apply(plan)

    assert result.ok
    assert order == ["bucket-0002", "bucket-0001"]
    assert len(store) == 0
    assert provider.objects == {}


def test_replace_destroys_then_creates(store):
    provider = InMemoryProvider()
    old = provider.create("bucket", {"n": 1})
    store.put(StateRecord(address=A, resource_id=old["id"], attributes=old))
    plan = Plan(
        changes=[
            PlannedChange(
                address=A,
                action=Action.REPLACE,
                before=old,
                after={"n": 2},
                resource_id=old["id"],
                config_keys=("n",),
            )
        ],
        dependencies={A: frozenset()},
    )

    Executor(provider, store).apply(plan)

    record = store.get(A)
    assert record.resource_id != old["id"]
    assert record.attributes["n"] == 2
    assert ("bucket", old["id"]) not in provider.objects


def test_conflict_blocks_dependents(store):
    plan = Plan(
        changes=[
            PlannedChange(address=A, action=Action.CONFLICT, reason="drifted"),
            _create(B, n=2),
            _create(D, n=4),
        ],
        dependencies={A: frozenset(), B: frozenset({A}), D: frozenset()},
    )
    result = Executor(InMemoryProvider(), store).apply(plan)

    assert result.outcomes[A].status == OperationStatus.BLOCKED
    assert result.outcomes[A].error == "drifted"
    assert result.outcomes[B].status == OperationStatus.BLOCKED
    assert result.outcomes[D].status == OperationStatus.SUCCEEDED


def test_cancel_before_start_cancels_everything(store):
    executor = Executor(InMemoryProvider(), store)
    executor.cancel()
    result = executor.apply(_chain_plan())

    assert result.cancelled
    assert {o.status for o in result.outcomes.values()} == {OperationStatus.CANCELLED}


def test_cancel_lets_in_flight_operations_finish(store):
    provider = InMemoryProvider()
    started = threading.Event()
    release = threading.Event()
    original = provider.create

    def slow_create(resource_type, attributes):
        started.set()
        release.wait(timeout=5)
        return original(resource_type, attributes)

    provider.create = slow_create
    plan = Plan(
        changes=[_create(A, n=1), _create(B, n=2)],
        dependencies={A: frozenset(), B: frozenset({A})},
    )
    executor = Executor(provider, store)

    def cancel_when_started():
        started.wait(timeout=5)
        executor.cancel()
        release.set()

    canceller = threading.Thread(target=cancel_when_started)
    canceller.start()
    result = executor.apply(plan)
    canceller.join()

    assert result.outcomes[A].status == OperationStatus.SUCCEEDED
    assert result.outcomes[B].status == OperationStatus.CANCELLED
    assert A in store


def test_concurrency_is_bounded(store):
    provider = InMemoryProvider()
    active = 0
    peak = 0
    lock = threading.Lock()
    original = provider.create

    def counting_create(resource_type, attributes):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1
        return original(resource_type, attributes)

    provider.create = counting_create
    addresses = [InstanceAddress("bucket", f"b{i}") for i in range(6)]
    plan = Plan(
        changes=[_create(a, n=i) for i, a in enumerate(addresses)],
        dependencies={a: frozenset() for a in addresses},
    )

    result = Executor(provider, store, max_concurrent=2).apply(plan)

    assert result.ok
    assert peak <= 2


def test_records_of_vanished_objects_are_forgotten(store):
    store.put(StateRecord(address=A, resource_id="gone", attributes={"id": "gone"}))
    plan = Plan(changes=[], drift=[DriftEntry(address=A, deleted=True)])

    result = Executor(InMemoryProvider(), store).apply(plan)

    assert result.ok
    assert A not in store


class PartialUpdateProvider(InMemoryProvider):
    """Applies only part of an update before failing."""

    def update(self, resource_type, resource_id, attributes):
        super().update(resource_type, resource_id, {"size": attributes["size"]})
        raise ProviderError("label rejected", partial_state={"size": attributes["size"]})


def test_partial_update_merges_confirmed_attributes(store):
    provider = PartialUpdateProvider()
    actual = provider.create("bucket", {"size": 1, "label": "old"})
    store.put(
        StateRecord(
            address=A,
            resource_id=actual["id"],
            attributes=actual,
            config_keys=("label", "size"),
        )
    )
    change = PlannedChange(
        address=A,
        action=Action.UPDATE,
        before=actual,
        after={"size": 2, "label": "new"},
        resource_id=actual["id"],
        config_keys=("label", "size"),
    )

    result = Executor(provider, store).apply(Plan(changes=[change]))

    assert result.outcomes[A].status == OperationStatus.FAILED
    assert "label rejected" in result.outcomes[A].error
    record = store.get(A)
    assert record.attributes == {"id": actual["id"], "size": 2, "label": "old"}
    assert record.resource_id == actual["id"]
    assert not record.tainted


def test_replacement_destroys_dependents_before_the_replaced_object(store):
    provider = InMemoryProvider()
    for address in (A, B):
        actual = provider.create("bucket", {"n": address.name})
        store.put(StateRecord(address=address, resource_id=actual["id"], attributes=actual))
    calls = []
    original_create = provider.create
    original_destroy = provider.destroy

    def tracking_create(resource_type, attributes):
        calls.append(("create", attributes["n"]))
        return original_create(resource_type, attributes)

    def tracking_destroy(resource_type, resource_id):
        calls.append(("destroy", resource_id))
        original_destroy(resource_type, resource_id)

    provider.create = tracking_create
    provider.destroy = tracking_destroy
    plan = Plan(
        changes=[
            PlannedChange(
                address=address,
                action=Action.REPLACE,
                before=store.get(address).attributes,
                after={"n": f"{address.name}2"},
                resource_id=store.get(address).resource_id,
            )
            for address in (A, B)
        ],
        dependencies={A: frozenset(), B: frozenset({A})},
    )
    assert Executor.ordering(plan) == {
        (A, DESTROY): {(B, DESTROY)},
        (A, APPLY): {(A, DESTROY)},
        (B, DESTROY): set(),
        (B, APPLY): {(A, APPLY), (B, DESTROY)},
    }

    result = Executor(provider, store, max_concurrent=4).apply(plan)

    assert result.ok
    assert calls == [
        ("destroy", "bucket-0002"),
        ("destroy", "bucket-0001"),
        ("create", "a2"),
        ("create", "b2"),
    ]
    assert store.get(B).attributes["n"] == "b2"


def test_failed_destroy_of_a_replacement_is_reported(store):
    provider = InMemoryProvider()
    old = provider.create("bucket", {"n": 1})
    store.put(StateRecord(address=A, resource_id=old["id"], attributes=old))

    def broken_destroy(resource_type, resource_id):
        raise ProviderError("in use")

    provider.destroy = broken_destroy
    change = PlannedChange(
        address=A, action=Action.REPLACE, before=old, after={"n": 2}, resource_id=old["id"]
    )

    result = Executor(provider, store).apply(Plan(changes=[change]))

    assert result.outcomes[A].status == OperationStatus.FAILED
    assert result.outcomes[A].error == "in use"
    assert store.get(A).resource_id == old["id"]
