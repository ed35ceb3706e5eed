"""Core data models for desired-state reconciliation."""

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from driftplan.errors import DriftError


class ValueType(StrEnum):
    """Type constraint for variables and attributes."""

    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"
    MAP = "map"
    ANY = "any"


class Action(StrEnum):
    """Planned action for a single resource instance."""

    NO_OP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    CONFLICT = "conflict"

    @property
    def destructive(self) -> bool:
        return self in (Action.REPLACE, Action.DELETE)


class OperationStatus(StrEnum):
    """Execution state of a planned operation."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN = _Unknown()


def contains_unknown(value: Any) -> bool:
    """Return True if ``value`` or anything nested in it is UNKNOWN."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


@dataclass(frozen=True, order=True)
class ResourceAddress:
    """Identity of a declared resource: type plus logical name."""

    resource_type: str
    name: str

    def __str__(self) -> str:
        return f"{self.resource_type}.{self.name}"


_ADDRESS_PATTERN = re.compile(
    r'^(?P<type>[A-Za-z_][\w-]*)\.(?P<name>[A-Za-z_][\w-]*)'
    r'(?:\[(?:(?P<index>\d+)|"(?P<key>[^"]*)")\])?$'
)


@dataclass(frozen=True)
class InstanceAddress:
    """Identity of one expanded instance of a resource."""

    resource_type: str
    name: str
    key: int | str | None = None

    @property
    def resource(self) -> ResourceAddress:
        return ResourceAddress(self.resource_type, self.name)

    @property
    def sort_key(self) -> tuple:
        if self.key is None:
            return (self.resource_type, self.name, 0, 0, "")
        if isinstance(self.key, int):
            return (self.resource_type, self.name, 1, self.key, "")
        return (self.resource_type, self.name, 2, 0, self.key)

    def __lt__(self, other: "InstanceAddress") -> bool:
        return self.sort_key < other.sort_key

    def __str__(self) -> str:
        if self.key is None:
            return f"{self.resource_type}.{self.name}"
        if isinstance(self.key, int):
            return f"{self.resource_type}.{self.name}[{self.key}]"
        return f'{self.resource_type}.{self.name}["{self.key}"]'

    @classmethod
    def parse(cls, text: str) -> "InstanceAddress":
        """Parse ``type.name``, ``type.name[0]`` or ``type.name["key"]``."""
        match = _ADDRESS_PATTERN.match(text.strip())
        if not match:
            raise ValueError(f"Invalid resource address: {text!r}")
        key: int | str | None = None
        if match.group("index") is not None:
            key = int(match.group("index"))
        elif match.group("key") is not None:
            key = match.group("key")
        return cls(match.group("type"), match.group("name"), key)


@dataclass(frozen=True)
class AttributeSchema:
    """Declared behavior of a single attribute."""

    type: ValueType = ValueType.ANY
    default: Any = None
    immutable: bool = False
    computed: bool = False
    sensitive: bool = False


@dataclass(frozen=True)
class BlockSchema:
    """Declared behavior of a nested block and its attributes."""

    attributes: dict[str, AttributeSchema] = field(default_factory=dict)
    immutable: bool = False


@dataclass(frozen=True)
class ResourceSchema:
    """Per-attribute defaults, type constraints and mutability for a resource type."""

    attributes: dict[str, AttributeSchema] = field(default_factory=dict)
    blocks: dict[str, BlockSchema] = field(default_factory=dict)

    def is_immutable(self, attribute: str, nested: str | None = None) -> bool:
        if attribute in self.blocks:
            block = self.blocks[attribute]
            if block.immutable:
                return True
            if nested is not None and nested in block.attributes:
                return block.attributes[nested].immutable
            return False
        declared = self.attributes.get(attribute)
        return declared is not None and declared.immutable

    def is_sensitive(self, attribute: str) -> bool:
        declared = self.attributes.get(attribute)
        return declared is not None and declared.sensitive

    def is_computed(self, attribute: str) -> bool:
        declared = self.attributes.get(attribute)
        return declared is not None and declared.computed


@dataclass(frozen=True)
class Lifecycle:
    """Per-resource lifecycle policy."""

    ignore_changes: tuple[str, ...] = ()
    ignore_all_changes: bool = False
    prevent_destroy: bool = False

    def ignores(self, attribute: str) -> bool:
        return self.ignore_all_changes or attribute in self.ignore_changes


@dataclass(frozen=True)
class Variable:
    """An input variable with an optional default."""

    name: str
    type: ValueType = ValueType.ANY
    default: Any = None
    sensitive: bool = False
    description: str = ""


@dataclass(frozen=True)
class DataSourceNode:
    """A read-only lookup resolved on every planning pass."""

    data_type: str
    name: str
    query: dict[str, Any]

    @property
    def address(self) -> str:
        return f"data.{self.data_type}.{self.name}"


@dataclass(frozen=True)
class ResourceNode:
    """A declared resource before expansion and resolution.

    Attribute and block values hold parsed expressions (see
    ``driftplan.expressions``), not concrete values.
    """

    resource_type: str
    name: str
    attributes: dict[str, Any]
    blocks: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    count: Any = None
    for_each: Any = None
    depends_on: tuple[ResourceAddress, ...] = ()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def address(self) -> ResourceAddress:
        return ResourceAddress(self.resource_type, self.name)

    @property
    def repeated(self) -> bool:
        return self.count is not None or self.for_each is not None


@dataclass(frozen=True)
class Configuration:
    """A loaded configuration document."""

    variables: dict[str, Variable] = field(default_factory=dict)
    schemas: dict[str, ResourceSchema] = field(default_factory=dict)
    data_sources: dict[str, DataSourceNode] = field(default_factory=dict)
    resources: dict[ResourceAddress, ResourceNode] = field(default_factory=dict)

    def schema_for(self, resource_type: str) -> ResourceSchema:
        return self.schemas.get(resource_type, ResourceSchema())


@dataclass(frozen=True)
class StateRecord:
    """Last-known actual state of one resource instance."""

    address: InstanceAddress
    resource_id: str
    attributes: dict[str, Any]
    config_keys: tuple[str, ...] = ()
    dependencies: tuple[InstanceAddress, ...] = ()
    tainted: bool = False
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": str(self.address),
            "id": self.resource_id,
            "attributes": self.attributes,
            "config_keys": list(self.config_keys),
            "dependencies": [str(d) for d in self.dependencies],
            "tainted": self.tainted,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateRecord":
        return cls(
            address=InstanceAddress.parse(data["address"]),
            resource_id=data["id"],
            attributes=dict(data.get("attributes", {})),
            config_keys=tuple(data.get("config_keys", ())),
            dependencies=tuple(InstanceAddress.parse(d) for d in data.get("dependencies", ())),
            tainted=bool(data.get("tainted", False)),
            updated_at=datetime.fromisoformat(data["updated_at"])
            if "updated_at" in data
            else datetime.now(UTC),
        )


@dataclass(frozen=True)
class AttributeChange:
    """A single attribute difference between actual and desired state."""

    path: str
    before: Any
    after: Any
    forces_replacement: bool = False
    sensitive: bool = False


@dataclass(frozen=True)
class PlannedChange:
    """The diff engine's classification of one instance."""

    address: InstanceAddress
    action: Action
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    changes: list[AttributeChange] = field(default_factory=list)
    resource_id: str | None = None
    config_keys: tuple[str, ...] = ()
    reason: str | None = None


@dataclass(frozen=True)
class DriftEntry:
    """Out-of-band divergence found while refreshing a state record."""

    address: InstanceAddress
    deleted: bool = False
    changes: list[AttributeChange] = field(default_factory=list)


@dataclass
class Plan:
    """Ordered set of changes needed to reconcile actual toward desired state."""

    changes: list[PlannedChange]
    dependencies: dict[InstanceAddress, frozenset[InstanceAddress]] = field(default_factory=dict)
    drift: list[DriftEntry] = field(default_factory=list)
    conflicts: list[DriftError] = field(default_factory=list)
    destroy: bool = False

    @property
    def operations(self) -> list[PlannedChange]:
        return [c for c in self.changes if c.action != Action.NO_OP]

    @property
    def has_changes(self) -> bool:
        return bool(self.operations)

    @property
    def is_destructive(self) -> bool:
        return any(c.action.destructive for c in self.changes)

    def get(self, address: InstanceAddress) -> PlannedChange | None:
        for change in self.changes:
            if change.address == address:
                return change
        return None

    def counts(self) -> dict[Action, int]:
        totals = {action: 0 for action in Action}
        for change in self.changes:
            totals[change.action] += 1
        return totals


@dataclass(frozen=True)
class OperationOutcome:
    """Terminal result of executing (or not executing) one planned change."""

    address: InstanceAddress
    action: Action
    status: OperationStatus
    error: str | None = None


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of executing a plan."""

    outcomes: dict[InstanceAddress, OperationOutcome]
    cancelled: bool = False

    def with_status(self, status: OperationStatus) -> list[OperationOutcome]:
        return sorted(
            (o for o in self.outcomes.values() if o.status == status),
            key=lambda o: o.address.sort_key,
        )

    @property
    def ok(self) -> bool:
        return all(o.status == OperationStatus.SUCCEEDED for o in self.outcomes.values())
