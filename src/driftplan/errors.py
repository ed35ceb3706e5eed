"""Exception taxonomy for driftplan.

Structural errors (``ConfigError`` and subclasses) are raised before any
provider call or state mutation. ``ProviderError`` is raised per operation
and only affects the failing instance's dependents.
"""

from typing import Any


class DriftplanError(Exception):
    """Base class for all driftplan errors."""


class ConfigError(DriftplanError):
    """A fatal problem with the configuration document."""

    def __init__(self, message: str, *, address: str | None = None, attribute: str | None = None):
        self.address = address
        self.attribute = attribute
        location = ".".join(p for p in (address, attribute) if p)
        super().__init__(f"{location}: {message}" if location else message)


class ConfigParseError(ConfigError):
    """The document is malformed."""


class UnresolvedReferenceError(ConfigError):
    """An expression names an identity that does not exist."""

    def __init__(
        self,
        reference: str,
        message: str | None = None,
        *,
        address: str | None = None,
        attribute: str | None = None,
    ):
        self.reference = reference
        super().__init__(
            message or f"reference to undeclared {reference!r}",
            address=address,
            attribute=attribute,
        )


class CycleError(ConfigError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__("dependency cycle: " + " -> ".join([*cycle, cycle[0]]), address=cycle[0])


class TypeMismatchError(ConfigError):
    """A value or default conflicts with a declared type constraint."""

    def __init__(
        self,
        expected: str,
        value: Any,
        *,
        address: str | None = None,
        attribute: str | None = None,
    ):
        self.expected = expected
        self.value = value
        super().__init__(
            f"expected {expected}, got {type(value).__name__} {value!r}",
            address=address,
            attribute=attribute,
        )


class PlanError(DriftplanError):
    """The plan violates a lifecycle policy."""

    def __init__(self, message: str, *, address: str):
        self.address = address
        super().__init__(f"{address}: {message}")


class DriftError(DriftplanError):
    """Actual state diverged in a way that needs operator resolution."""

    def __init__(self, address: str, message: str, *, attributes: list[str] | None = None):
        self.address = address
        self.attributes = attributes or []
        super().__init__(f"{address}: {message}")


class StateError(DriftplanError):
    """The persisted state could not be read or written."""


class ProviderError(DriftplanError):
    """A provider call failed.

    ``partial_state`` carries the attributes the provider confirmed before
    failing, if any.
    """

    def __init__(self, message: str, *, partial_state: dict[str, Any] | None = None):
        self.partial_state = partial_state
        super().__init__(message)


class NotFoundError(ProviderError):
    """The provider has no object with the requested identity."""
