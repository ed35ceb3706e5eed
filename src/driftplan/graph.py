"""Dependency graph construction, cycle detection and instance expansion."""

import logging
from collections.abc import Iterable, Iterator
from typing import Any

import networkx as nx

from driftplan.errors import ConfigParseError, CycleError, UnresolvedReferenceError
from driftplan.expressions import Reference, Subscript, iter_references
from driftplan.models import Configuration, InstanceAddress, ResourceAddress, ResourceNode

logger = logging.getLogger(__name__)

InstanceKey = int | str | None


def _resource_expressions(node: ResourceNode) -> Iterator[tuple[str, Any]]:
    yield "count", node.count
    yield "for_each", node.for_each
    for name, value in node.attributes.items():
        yield name, value
    for name, items in node.blocks.items():
        yield name, items


def select_targets(
    reference: Reference,
    source: InstanceAddress,
    source_keys: list[InstanceKey],
    target_keys: list[InstanceKey],
    *,
    attribute: str | None = None,
) -> tuple[list[InstanceAddress], bool]:
    """Map a resource reference made by ``source`` to the instances it reads.

    Returns the target instances and whether the reference evaluates to a list
    (a splat). Repeated resources of equal key sets correlate index-to-index.
    """
    target = reference.resource_address
    selector = reference.selector

    def instance(key: InstanceKey) -> InstanceAddress:
        if key not in target_keys:
            raise UnresolvedReferenceError(
                str(reference),
                f"{InstanceAddress(target.resource_type, target.name, key)} does not exist "
                f"({target} has {len(target_keys)} instance(s))",
                address=str(source),
                attribute=attribute,
            )
        return InstanceAddress(target.resource_type, target.name, key)

    if selector is not None:
        if selector.splat:
            instances = [InstanceAddress(target.resource_type, target.name, k) for k in target_keys]
            return instances, True
        if selector.dynamic is not None:
            return [instance(source.key)], False
        return [instance(selector.key)], False

    if target_keys == [None]:
        return [InstanceAddress(target.resource_type, target.name)], False

    if source.key is not None and set(source_keys) == set(target_keys):
        return [instance(source.key)], False

    raise UnresolvedReferenceError(
        str(reference),
        f"{target} has {len(target_keys)} instance(s) but {source.resource} has "
        f"{len([k for k in source_keys if k is not None])}; "
        "use an explicit index, [count.index], [each.key] or [*]",
        address=str(source),
        attribute=attribute,
    )


class DependencyGraph:
    """Declaration-level DAG of data sources and resources.

    Nodes are ``data.TYPE.NAME`` and ``TYPE.NAME`` strings; an edge ``a -> b``
    means ``b`` reads from ``a``.
    """

    def __init__(self, config: Configuration):
        self.config = config
        self.graph = nx.DiGraph()
        self._build()
        self._check_acyclic()

    def _build(self) -> None:
        config = self.config
        for address in config.data_sources:
            self.graph.add_node(address)
        for address in config.resources:
            self.graph.add_node(str(address))

        for address, node in config.data_sources.items():
            for reference in iter_references(node.query):
                self._check_reference(reference, address, None)
                if reference.kind in ("resource", "count", "each"):
                    raise ConfigParseError(
                        f"data sources may only reference variables and data sources, "
                        f"not {reference}",
                        address=address,
                    )
                if reference.kind == "data":
                    self.graph.add_edge(reference.target, address)

        for address, node in config.resources.items():
            for attribute, value in _resource_expressions(node):
                for reference in iter_references(value):
                    self._check_reference(reference, str(address), attribute, node)
                    if attribute in ("count", "for_each") and reference.kind not in ("var", "data"):
                        raise ConfigParseError(
                            f"{attribute} may only reference variables and data sources",
                            address=str(address),
                            attribute=attribute,
                        )
                    if reference.kind in ("data", "resource"):
                        self.graph.add_edge(reference.target, str(address))
            for dependency in node.depends_on:
                if dependency not in config.resources:
                    raise UnresolvedReferenceError(
                        str(dependency), address=str(address), attribute="depends_on"
                    )
                self.graph.add_edge(str(dependency), str(address))

    def _check_reference(
        self,
        reference: Reference,
        address: str,
        attribute: str | None,
        node: ResourceNode | None = None,
    ) -> None:
        config = self.config
        kind = reference.kind
        if kind == "var" and reference.path[0] not in config.variables:
            raise UnresolvedReferenceError(reference.target, address=address, attribute=attribute)
        if kind == "data" and reference.target not in config.data_sources:
            raise UnresolvedReferenceError(reference.target, address=address, attribute=attribute)
        if kind == "resource" and reference.resource_address not in config.resources:
            raise UnresolvedReferenceError(reference.target, address=address, attribute=attribute)

        uses_count = kind == "count" or _uses_dynamic(reference, "count.index")
        uses_each = kind == "each" or _uses_dynamic(reference, "each.key")
        if uses_count and (node is None or node.count is None):
            raise ConfigParseError(
                "count.index is only valid in resources that set count",
                address=address,
                attribute=attribute,
            )
        if uses_each and (node is None or node.for_each is None):
            raise ConfigParseError(
                "each.key and each.value are only valid in resources that set for_each",
                address=address,
                attribute=attribute,
            )

    def _check_acyclic(self) -> None:
        if nx.is_directed_acyclic_graph(self.graph):
            return
        edges = nx.find_cycle(self.graph)
        cycle = [u for u, _ in edges]
        logger.debug("Dependency cycle found: %s", cycle)
        raise CycleError(cycle)

    def order(self) -> list[str]:
        """Deterministic topological order of declaration nodes."""
        return list(nx.lexicographical_topological_sort(self.graph))

    def data_order(self) -> list[str]:
        return [n for n in self.order() if n in self.config.data_sources]

    def resource_order(self) -> list[ResourceAddress]:
        return [
            ResourceAddress(*n.split(".", 1))
            for n in self.order()
            if n not in self.config.data_sources
        ]

    def expand(self, keys: dict[ResourceAddress, list[InstanceKey]]) -> "InstanceGraph":
        """Expand every resource into its instances and wire instance edges.

        ``keys`` maps each resource to its instance keys: ``[None]`` for a
        single instance, ``[0..N-1]`` for count, string keys for for_each.
        """
        return InstanceGraph(self.config, keys)


def _uses_dynamic(reference: Reference, dynamic: str) -> bool:
    return any(isinstance(step, Subscript) and step.dynamic == dynamic for step in reference.path)


class InstanceGraph:
    """Instance-level DAG produced by count/for_each expansion."""

    def __init__(self, config: Configuration, keys: dict[ResourceAddress, list[InstanceKey]]):
        self.config = config
        self.keys = keys
        self.graph = nx.DiGraph()
        for address, node in config.resources.items():
            for key in keys[address]:
                self.graph.add_node(InstanceAddress(address.resource_type, address.name, key))
        for address, node in config.resources.items():
            for key in keys[address]:
                self._wire(InstanceAddress(address.resource_type, address.name, key), node)

    def _wire(self, source: InstanceAddress, node: ResourceNode) -> None:
        source_keys = self.keys[node.address]
        for attribute, value in _resource_expressions(node):
            if attribute in ("count", "for_each"):
                continue
            for reference in iter_references(value):
                if reference.kind != "resource":
                    continue
                targets, _ = select_targets(
                    reference,
                    source,
                    source_keys,
                    self.keys[reference.resource_address],
                    attribute=attribute,
                )
                for target in targets:
                    self.graph.add_edge(target, source)
        for dependency in node.depends_on:
            for key in self.keys[dependency]:
                self.graph.add_edge(
                    InstanceAddress(dependency.resource_type, dependency.name, key), source
                )

    def __contains__(self, address: InstanceAddress) -> bool:
        return address in self.graph

    @property
    def instances(self) -> list[InstanceAddress]:
        return sorted(self.graph.nodes)

    def node(self, address: InstanceAddress) -> ResourceNode:
        return self.config.resources[address.resource]

    def order(self) -> list[InstanceAddress]:
        """Deterministic topological order of instances."""
        return list(nx.lexicographical_topological_sort(self.graph, key=lambda a: a.sort_key))

    def generations(self) -> list[list[InstanceAddress]]:
        """Groups of instances that may run in parallel, in dependency order."""
        return [sorted(g) for g in nx.topological_generations(self.graph)]

    def dependencies(self, address: InstanceAddress) -> frozenset[InstanceAddress]:
        return frozenset(self.graph.predecessors(address))

    def dependents(self, address: InstanceAddress) -> frozenset[InstanceAddress]:
        return frozenset(self.graph.successors(address))

    def dependency_map(self) -> dict[InstanceAddress, frozenset[InstanceAddress]]:
        return {address: self.dependencies(address) for address in self.graph.nodes}


def to_dot(edges: Iterable[tuple[Any, Any]], nodes: Iterable[Any]) -> str:
    """Render a dependency graph in Graphviz DOT format."""
    lines = ["digraph driftplan {", "  rankdir = LR;"]
    for node in sorted(str(n) for n in nodes):
        lines.append(f'  "{_dot_escape(node)}";')
    for source, target in sorted((str(s), str(t)) for s, t in edges):
        lines.append(f'  "{_dot_escape(source)}" -> "{_dot_escape(target)}";')
    lines.append("}")
    return "\n".join(lines)


def _dot_escape(value: str) -> str:
    return value.replace('"', '\\"')
