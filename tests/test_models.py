"""Tests for driftplan data models."""

from driftplan.errors import ConfigError, CycleError, TypeMismatchError
from driftplan.models import (
    UNKNOWN,
    Action,
    ApplyResult,
    InstanceAddress,
    OperationOutcome,
    OperationStatus,
    Plan,
    PlannedChange,
    contains_unknown,
)


def test_action_values():
    """Test Action enum values used in reports."""
    assert Action.NO_OP.value == "no-op"
    assert Action.REPLACE.value == "replace"
    assert Action.CONFLICT.value == "conflict"


def test_destructive_actions():
    assert Action.REPLACE.destructive
    assert Action.DELETE.destructive
    assert not Action.UPDATE.destructive
    assert not Action.CREATE.destructive


def test_operation_status_values():
    assert OperationStatus.IN_PROGRESS.value == "in-progress"
    assert OperationStatus.BLOCKED.value == "blocked"


def test_unknown_is_a_singleton():
    assert type(UNKNOWN)() is UNKNOWN
    assert repr(UNKNOWN) == "(known after apply)"
    assert contains_unknown({"a": [1, UNKNOWN]})
    assert not contains_unknown({"a": [1, None]})


def test_instance_address_ordering_and_str():
    addresses = [
        InstanceAddress("user", "team", "bob"),
        InstanceAddress("pool", "w", 10),
        InstanceAddress("pool", "w", 2),
        InstanceAddress("pool", "a"),
    ]
    assert [str(a) for a in sorted(addresses)] == [
        "pool.a",
        "pool.w[2]",
        "pool.w[10]",
        'user.team["bob"]',
    ]


def test_plan_counts_and_operations():
    a = InstanceAddress("bucket", "a")
    b = InstanceAddress("bucket", "b")
    plan = Plan(
        changes=[
            PlannedChange(address=a, action=Action.NO_OP),
            PlannedChange(address=b, action=Action.DELETE),
        ]
    )
    counts = plan.counts()
    assert counts[Action.NO_OP] == 1
    assert counts[Action.DELETE] == 1
    assert counts[Action.CREATE] == 0
    assert [c.address for c in plan.operations] == [b]
    assert plan.is_destructive
    assert plan.get(a).action == Action.NO_OP
    assert plan.get(InstanceAddress("bucket", "zzz")) is None


def test_apply_result_ok():
    a = InstanceAddress("bucket", "a")
    ok = ApplyResult({a: OperationOutcome(a, Action.CREATE, OperationStatus.SUCCEEDED)})
    failed = ApplyResult({a: OperationOutcome(a, Action.CREATE, OperationStatus.FAILED, "x")})
    assert ok.ok
    assert not failed.ok
    assert failed.with_status(OperationStatus.FAILED)[0].error == "x"


def test_error_messages_carry_location():
    error = TypeMismatchError("number", "big", address="node_pool.workers", attribute="size")
    assert str(error) == "node_pool.workers.size: expected number, got str 'big'"
    assert isinstance(error, ConfigError)
    cycle = CycleError(["bucket.a", "bucket.b"])
    assert str(cycle) == "bucket.a: dependency cycle: bucket.a -> bucket.b -> bucket.a"
