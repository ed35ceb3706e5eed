"""Resolver / interpolation engine.

Turns parsed expressions into concrete values. Variables resolve from
overrides or their declared default; omitted attributes fall back to the
per-attribute defaults of the resource schema; every value is checked against
its declared type constraint.
"""

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from driftplan.errors import ConfigParseError, TypeMismatchError, UnresolvedReferenceError
from driftplan.expressions import Reference, Subscript, Template, iter_references
from driftplan.graph import InstanceKey, select_targets
from driftplan.models import (
    UNKNOWN,
    AttributeSchema,
    Configuration,
    DataSourceNode,
    InstanceAddress,
    ResourceAddress,
    ResourceNode,
    ResourceSchema,
    ValueType,
    contains_unknown,
)

logger = logging.getLogger(__name__)

LIST_SEPARATOR = ","


def split_list(text: str) -> list[str]:
    """Split a delimited string into a list on the fixed separator."""
    return [item.strip() for item in text.split(LIST_SEPARATOR) if item.strip()]


def coerce(
    value: Any,
    expected: ValueType,
    *,
    address: str | None = None,
    attribute: str | None = None,
) -> Any:
    """Convert ``value`` to ``expected`` or raise ``TypeMismatchError``."""
    if value is None or expected == ValueType.ANY or contains_unknown(value):
        return value

    def mismatch():
        return TypeMismatchError(expected.value, value, address=address, attribute=attribute)

    if expected == ValueType.STRING:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float)):
            return str(value)
        raise mismatch()
    if expected == ValueType.NUMBER:
        if isinstance(value, bool):
            raise mismatch()
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                try:
                    return float(value)
                except ValueError:
                    raise mismatch() from None
        raise mismatch()
    if expected == ValueType.BOOL:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise mismatch()
    if expected == ValueType.LIST:
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return split_list(value)
        raise mismatch()
    if isinstance(value, dict):
        return value
    raise mismatch()


@dataclass(frozen=True)
class KnownValues:
    """Attribute values of a referenced instance.

    When ``complete`` is False the instance is about to be created or
    replaced, so attributes it does not configure are unknown until apply.
    """

    attributes: dict[str, Any]
    complete: bool = True


@dataclass
class _Context:
    address: str
    instance: InstanceAddress | None = None
    node: ResourceNode | None = None
    each_value: Any = None
    lookup: Callable[[InstanceAddress], KnownValues] | None = None
    keys: dict[ResourceAddress, list[InstanceKey]] = field(default_factory=dict)


class Resolver:
    """Evaluates expressions against variables, data sources and other instances."""

    def __init__(self, config: Configuration, variables: dict[str, Any] | None = None):
        self.config = config
        self.variables = self._resolve_variables(variables or {})
        self.data: dict[str, dict[str, Any]] = {}

    def _resolve_variables(self, overrides: dict[str, Any]) -> dict[str, Any]:
        for name in overrides:
            if name not in self.config.variables:
                raise UnresolvedReferenceError(
                    f"var.{name}", "value given for an undeclared variable", address=f"var.{name}"
                )
        resolved = {}
        for name, variable in self.config.variables.items():
            if name in overrides:
                value = overrides[name]
            elif variable.default is not None:
                value = variable.default
            else:
                raise UnresolvedReferenceError(
                    f"var.{name}", "variable has no value and no default", address=f"var.{name}"
                )
            resolved[name] = coerce(value, variable.type, address=f"var.{name}")
        return resolved

    def resolve_data(
        self, node: DataSourceNode, read: Callable[[str, dict[str, Any]], dict[str, Any]]
    ) -> dict[str, Any]:
        """Evaluate a data source's query and read it through ``read``."""
        query = self._evaluate(node.query, _Context(address=node.address), None)
        logger.debug("Reading %s", node.address)
        result = read(node.data_type, query)
        self.data[node.address] = {**query, **result}
        return self.data[node.address]

    def instance_keys(self, node: ResourceNode) -> list[InstanceKey]:
        """Expansion keys for a resource: ``[None]``, ``range(count)`` or for_each keys."""
        context = _Context(address=str(node.address))
        if node.count is not None:
            raw = self._evaluate(node.count, context, "count")
            count = coerce(raw, ValueType.NUMBER, address=str(node.address), attribute="count")
            if count is UNKNOWN or not math.isfinite(count) or count != int(count) or count < 0:
                raise ConfigParseError(
                    f"count must resolve to a non-negative integer, got {raw!r}",
                    address=str(node.address),
                    attribute="count",
                )
            return list(range(int(count)))
        if node.for_each is not None:
            collection = self._evaluate(node.for_each, context, "for_each")
            if isinstance(collection, dict):
                return sorted(str(k) for k in collection)
            if isinstance(collection, str):
                collection = split_list(collection)
            if not isinstance(collection, list) or contains_unknown(collection):
                raise ConfigParseError(
                    f"for_each must resolve to a list or a map, got {collection!r}",
                    address=str(node.address),
                    attribute="for_each",
                )
            keys = [str(item) for item in collection]
            if len(set(keys)) != len(keys):
                raise ConfigParseError(
                    "for_each contains duplicate keys",
                    address=str(node.address),
                    attribute="for_each",
                )
            return keys
        return [None]

    def _reads_sensitive(self, value: Any) -> bool:
        for reference in iter_references(value):
            if reference.kind == "var" and self.config.variables[reference.path[0]].sensitive:
                return True
            if reference.kind == "data":
                source = self.config.data_sources[reference.target]
                if self._reads_sensitive(source.query):
                    return True
        return False

    def sensitive_attributes(self, node: ResourceNode) -> frozenset[str]:
        """Names of attributes and blocks whose value interpolates a sensitive variable."""
        values = {**node.attributes, **node.blocks}
        return frozenset(name for name, value in values.items() if self._reads_sensitive(value))

    def _each_value(self, node: ResourceNode, key: InstanceKey) -> Any:
        if node.for_each is None:
            return None
        collection = self._evaluate(node.for_each, _Context(address=str(node.address)), "for_each")
        if isinstance(collection, dict):
            return collection.get(key)
        return key

    def resolve_instance(
        self,
        address: InstanceAddress,
        node: ResourceNode,
        keys: dict[ResourceAddress, list[InstanceKey]],
        lookup: Callable[[InstanceAddress], KnownValues],
    ) -> dict[str, Any]:
        """Resolve every attribute and block of one instance, applying schema defaults."""
        context = _Context(
            address=str(address),
            instance=address,
            node=node,
            each_value=self._each_value(node, address.key),
            lookup=lookup,
            keys=keys,
        )
        attributes = {}
        for name, expression in node.attributes.items():
            value = self._evaluate(expression, context, name)
            if value is not None:
                attributes[name] = value
        for name, items in node.blocks.items():
            attributes[name] = [self._evaluate(item, context, name) for item in items]
        return self.apply_schema(attributes, self.config.schema_for(node.resource_type), address)

    def apply_schema(
        self, attributes: dict[str, Any], schema: ResourceSchema, address: InstanceAddress
    ) -> dict[str, Any]:
        """Substitute per-attribute defaults and enforce type constraints."""
        result = dict(attributes)
        _apply_attribute_schemas(result, schema.attributes, str(address), prefix="")
        for block_name, block in schema.blocks.items():
            items = result.get(block_name)
            if items is None:
                continue
            if not isinstance(items, list):
                raise TypeMismatchError(
                    "block", items, address=str(address), attribute=block_name
                )
            resolved_items = []
            for index, item in enumerate(items):
                item = dict(item)
                _apply_attribute_schemas(
                    item, block.attributes, str(address), prefix=f"{block_name}[{index}]."
                )
                resolved_items.append(item)
            result[block_name] = resolved_items
        return result

    def _evaluate(self, value: Any, context: _Context, attribute: str | None) -> Any:
        if isinstance(value, Template):
            single = value.single
            if single is not None:
                return self._reference(single, context, attribute)
            pieces = []
            for part in value.parts:
                if isinstance(part, str):
                    pieces.append(part)
                    continue
                resolved = self._reference(part, context, attribute)
                if resolved is UNKNOWN:
                    return UNKNOWN
                pieces.append(_to_text(resolved, context.address, attribute))
            return "".join(pieces)
        if isinstance(value, list):
            return [self._evaluate(v, context, attribute) for v in value]
        if isinstance(value, dict):
            return {k: self._evaluate(v, context, attribute) for k, v in value.items()}
        return value

    def _reference(self, reference: Reference, context: _Context, attribute: str | None) -> Any:
        kind = reference.kind
        if kind == "var":
            value = self.variables[reference.path[0]]
        elif kind == "data":
            if reference.target not in self.data:
                raise UnresolvedReferenceError(
                    reference.target,
                    f"{reference.target} has not been read",
                    address=context.address,
                    attribute=attribute,
                )
            value = self.data[reference.target]
        elif kind == "count":
            return context.instance.key
        elif kind == "each":
            if reference.path[0] == "key":
                return context.instance.key
            value = context.each_value
        else:
            return self._resource_reference(reference, context, attribute)
        return self._traverse(value, reference.remainder, reference, context, attribute)

    def _resource_reference(
        self, reference: Reference, context: _Context, attribute: str | None
    ) -> Any:
        target = reference.resource_address
        targets, is_list = select_targets(
            reference,
            context.instance,
            context.keys[context.node.address],
            context.keys[target],
            attribute=attribute,
        )
        values = []
        for instance in targets:
            known = context.lookup(instance)
            remainder = reference.remainder
            if not remainder:
                values.append(known.attributes)
                continue
            head = remainder[0]
            if isinstance(head, str) and head not in known.attributes:
                if not known.complete:
                    values.append(UNKNOWN)
                    continue
                raise UnresolvedReferenceError(
                    str(reference),
                    f"{instance} has no attribute {head!r}",
                    address=context.address,
                    attribute=attribute,
                )
            values.append(
                self._traverse(known.attributes, remainder, reference, context, attribute)
            )
        return values if is_list else values[0]

    def _traverse(
        self,
        value: Any,
        steps: tuple[str | Subscript, ...],
        reference: Reference,
        context: _Context,
        attribute: str | None,
    ) -> Any:
        for step in steps:
            if value is UNKNOWN:
                return UNKNOWN
            if isinstance(step, Subscript):
                if step.splat:
                    continue
                key = context.instance.key if step.dynamic else step.key
            else:
                key = step
            try:
                if isinstance(value, list):
                    if not isinstance(key, int):
                        raise KeyError(key)
                    value = value[key]
                elif isinstance(value, dict):
                    value = value[key]
                else:
                    raise KeyError(key)
            except (KeyError, IndexError):
                size = f" (has {len(value)} elements)" if isinstance(value, list) else ""
                raise UnresolvedReferenceError(
                    str(reference),
                    f"{reference} has no element {key!r}{size}",
                    address=context.address,
                    attribute=attribute,
                ) from None
        return value


def _apply_attribute_schemas(
    attributes: dict[str, Any],
    schemas: dict[str, AttributeSchema],
    address: str,
    *,
    prefix: str,
) -> None:
    for name, declared in schemas.items():
        if attributes.get(name) is None:
            if declared.default is None:
                continue
            attributes[name] = coerce(
                declared.default, declared.type, address=address, attribute=f"{prefix}{name}"
            )
        else:
            attributes[name] = coerce(
                attributes[name], declared.type, address=address, attribute=f"{prefix}{name}"
            )


def _to_text(value: Any, address: str, attribute: str | None) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (str, int, float)):
        return str(value)
    raise TypeMismatchError("string", value, address=address, attribute=attribute)
