"""Provider adapter boundary.

The engine never talks to a platform directly; every side effect goes through
these five calls. ``resource_id`` is the provider-assigned physical identity
returned as ``id`` by ``create``.
"""

from abc import ABC, abstractmethod
from typing import Any


class Provider(ABC):
    """Translates planned operations into calls against a target platform."""

    @abstractmethod
    def create(self, resource_type: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Create an object and return its actual state, including ``id``.

        Raises ProviderError, with ``partial_state`` set if the object was
        created but could not be fully configured.
        """

    @abstractmethod
    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        """Return the current actual state. Raises NotFoundError if it is gone."""

    @abstractmethod
    def update(
        self, resource_type: str, resource_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        """Update an object in place and return its new actual state.

        An attribute given as ``None`` is removed from the object.
        """

    @abstractmethod
    def destroy(self, resource_type: str, resource_id: str) -> None:
        """Delete an object. Deleting an object that is already gone is not an error."""

    @abstractmethod
    def read_data(self, data_type: str, query: dict[str, Any]) -> dict[str, Any]:
        """Answer a read-only data-source lookup."""
