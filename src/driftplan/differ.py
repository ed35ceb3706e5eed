"""Diff engine: classifies each instance by comparing desired and actual state."""

from typing import Any

from driftplan.models import (
    UNKNOWN,
    Action,
    AttributeChange,
    InstanceAddress,
    Lifecycle,
    PlannedChange,
    ResourceSchema,
    StateRecord,
)


def values_equal(left: Any, right: Any) -> bool:
    """Deep equality where numbers compare numerically and UNKNOWN never matches."""
    if left is UNKNOWN or right is UNKNOWN:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(values_equal(left[k], right[k]) for k in left)
    return type(left) is type(right) and left == right


def _compare_block(
    name: str, before: Any, after: Any, schema: ResourceSchema, sensitive: bool
) -> list[AttributeChange]:
    block = schema.blocks[name]
    if (
        not isinstance(before, list)
        or not isinstance(after, list)
        or len(before) != len(after)
    ):
        if values_equal(before, after):
            return []
        forces = block.immutable or any(a.immutable for a in block.attributes.values())
        return [
            AttributeChange(name, before, after, forces_replacement=forces, sensitive=sensitive)
        ]

    changes = []
    for index, (old, new) in enumerate(zip(before, after)):
        old = old if isinstance(old, dict) else {}
        new = new if isinstance(new, dict) else {}
        for key in sorted(old.keys() | new.keys()):
            if values_equal(old.get(key), new.get(key)):
                continue
            nested = block.attributes.get(key)
            changes.append(
                AttributeChange(
                    f"{name}[{index}].{key}",
                    old.get(key),
                    new.get(key),
                    forces_replacement=schema.is_immutable(name, key),
                    sensitive=sensitive or (nested is not None and nested.sensitive),
                )
            )
    return changes


def compare_attributes(
    desired: dict[str, Any],
    actual: dict[str, Any],
    schema: ResourceSchema,
    lifecycle: Lifecycle,
    config_keys: tuple[str, ...] = (),
    sensitive: frozenset[str] = frozenset(),
) -> list[AttributeChange]:
    """List attribute differences, skipping everything lifecycle ignores.

    Only configured attributes are compared; attributes the provider computes
    are not. An attribute that was configured at the last apply (in
    ``config_keys``) and is now omitted is reported as a removal.
    """
    changes = []
    for key in sorted(set(desired) | set(config_keys)):
        if lifecycle.ignores(key):
            continue
        before = actual.get(key)
        if key not in desired:
            if before is not None:
                changes.append(
                    AttributeChange(
                        key,
                        before,
                        None,
                        forces_replacement=schema.is_immutable(key),
                        sensitive=schema.is_sensitive(key) or key in sensitive,
                    )
                )
            continue
        after = desired[key]
        if key in schema.blocks:
            changes.extend(_compare_block(key, before, after, schema, key in sensitive))
        elif not values_equal(before, after):
            changes.append(
                AttributeChange(
                    key,
                    before,
                    after,
                    forces_replacement=schema.is_immutable(key),
                    sensitive=schema.is_sensitive(key) or key in sensitive,
                )
            )
    return changes


def detect_drift(
    recorded: dict[str, Any],
    refreshed: dict[str, Any],
    schema: ResourceSchema,
    lifecycle: Lifecycle,
    sensitive: frozenset[str] = frozenset(),
) -> list[AttributeChange]:
    """Attribute differences between the last recorded and the freshly read state.

    Attributes the schema marks as computed belong to the provider and never drift.
    """
    changes = []
    for key in sorted(set(recorded) | set(refreshed)):
        if lifecycle.ignores(key) or schema.is_computed(key):
            continue
        if values_equal(recorded.get(key), refreshed.get(key)):
            continue
        changes.append(
            AttributeChange(
                key,
                recorded.get(key),
                refreshed.get(key),
                forces_replacement=schema.is_immutable(key),
                sensitive=schema.is_sensitive(key) or key in sensitive,
            )
        )
    return changes


def diff_instance(
    address: InstanceAddress,
    desired: dict[str, Any] | None,
    record: StateRecord | None,
    schema: ResourceSchema,
    lifecycle: Lifecycle,
    *,
    force_replace: bool = False,
    sensitive: frozenset[str] = frozenset(),
) -> PlannedChange:
    """Classify one instance as create, update, replace, delete or no-op."""
    if desired is None:
        if record is None:
            raise ValueError(f"{address}: nothing desired and nothing recorded")
        return PlannedChange(
            address=address,
            action=Action.DELETE,
            before=record.attributes,
            resource_id=record.resource_id,
            config_keys=record.config_keys,
        )

    config_keys = tuple(sorted(desired))

    if record is None:
        return PlannedChange(
            address=address,
            action=Action.CREATE,
            after=desired,
            changes=[
                AttributeChange(
                    key,
                    None,
                    desired[key],
                    sensitive=schema.is_sensitive(key) or key in sensitive,
                )
                for key in sorted(desired)
            ],
            config_keys=config_keys,
        )

    changes = compare_attributes(
        desired, record.attributes, schema, lifecycle, record.config_keys, sensitive
    )

    reason = None
    if record.tainted:
        action, reason = Action.REPLACE, "tainted by a failed operation"
    elif force_replace:
        action, reason = Action.REPLACE, "replacement requested"
    elif any(c.forces_replacement for c in changes):
        forced = ", ".join(c.path for c in changes if c.forces_replacement)
        action, reason = Action.REPLACE, f"immutable attribute changed: {forced}"
    elif changes:
        action = Action.UPDATE
    else:
        action = Action.NO_OP

    return PlannedChange(
        address=address,
        action=action,
        before=record.attributes,
        after=desired,
        changes=changes,
        resource_id=record.resource_id,
        config_keys=config_keys,
        reason=reason,
    )
