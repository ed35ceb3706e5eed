"""Dictionary-backed provider."""

import copy
import itertools
import logging
import threading
from collections.abc import Callable
from typing import Any

from driftplan.errors import NotFoundError, ProviderError
from driftplan.providers.base import Provider

logger = logging.getLogger(__name__)

ComputedHook = Callable[[str, dict[str, Any]], dict[str, Any]]
DataHandler = Callable[[dict[str, Any]], dict[str, Any]] | dict[str, Any]


class InMemoryProvider(Provider):
    """Keeps objects in a dictionary keyed by ``(resource_type, id)``.

    ``computed`` maps a resource type to a hook that returns provider-computed
    attributes for a new object. ``data_sources`` maps a data type to either a
    static result or a function of the query.
    """

    def __init__(
        self,
        computed: dict[str, ComputedHook] | None = None,
        data_sources: dict[str, DataHandler] | None = None,
    ):
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.computed = computed or {}
        self.data_sources = data_sources or {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def _new_id(self, resource_type: str) -> str:
        return f"{resource_type}-{next(self._ids):04d}"

    def _changed(self) -> None:
        """Hook called after every mutation."""

    def create(self, resource_type: str, attributes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            resource_id = self._new_id(resource_type)
            state = copy.deepcopy(attributes)
            hook = self.computed.get(resource_type)
            if hook is not None:
                state.update(hook(resource_id, state))
            state["id"] = resource_id
            self.objects[(resource_type, resource_id)] = state
            self._changed()
        logger.debug("Created %s %s", resource_type, resource_id)
        return copy.deepcopy(state)

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        with self._lock:
            state = self.objects.get((resource_type, resource_id))
        if state is None:
            raise NotFoundError(f"{resource_type} {resource_id} not found")
        return copy.deepcopy(state)

    def update(
        self, resource_type: str, resource_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        with self._lock:
            state = self.objects.get((resource_type, resource_id))
            if state is None:
                raise NotFoundError(f"{resource_type} {resource_id} not found")
            for key, value in attributes.items():
                if value is None:
                    state.pop(key, None)
                else:
                    state[key] = copy.deepcopy(value)
            state["id"] = resource_id
            self._changed()
        logger.debug("Updated %s %s", resource_type, resource_id)
        return copy.deepcopy(state)

    def destroy(self, resource_type: str, resource_id: str) -> None:
        with self._lock:
            self.objects.pop((resource_type, resource_id), None)
            self._changed()
        logger.debug("Destroyed %s %s", resource_type, resource_id)

    def read_data(self, data_type: str, query: dict[str, Any]) -> dict[str, Any]:
        handler = self.data_sources.get(data_type)
        if handler is None:
            raise ProviderError(f"unknown data source type {data_type!r}")
        if callable(handler):
            return handler(query)
        return copy.deepcopy(handler)
