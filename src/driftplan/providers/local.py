"""File-backed provider that simulates a platform on local disk."""

import json
import logging
from pathlib import Path
from typing import Any

from driftplan.errors import ProviderError
from driftplan.providers.memory import InMemoryProvider

logger = logging.getLogger(__name__)


class FileProvider(InMemoryProvider):
    """An ``InMemoryProvider`` whose objects persist in a JSON file.

    The file holds ``objects`` (``"type/id" -> attributes``), the id
    ``sequence`` and a static ``data`` table keyed by data type. Data lookups
    return the table entry merged over the query.
    """

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)
        self._sequence = 0
        self._data: dict[str, dict[str, Any]] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            document = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            raise ProviderError(f"{self.path}: {exc}") from exc
        for key, attributes in document.get("objects", {}).items():
            resource_type, _, resource_id = key.partition("/")
            self.objects[(resource_type, resource_id)] = attributes
        self._sequence = int(document.get("sequence", 0))
        self.data_sources = {
            data_type: _static_lookup(result)
            for data_type, result in document.get("data", {}).items()
        }
        self._data = document.get("data", {})

    def _new_id(self, resource_type: str) -> str:
        self._sequence += 1
        return f"{resource_type}-{self._sequence:04d}"

    def _changed(self) -> None:
        document = {
            "sequence": self._sequence,
            "objects": {f"{t}/{i}": attrs for (t, i), attrs in sorted(self.objects.items())},
            "data": self._data,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(document, indent=2, sort_keys=True))
        except OSError as exc:
            raise ProviderError(f"{self.path}: {exc}") from exc


def _static_lookup(result: dict[str, Any]):
    def lookup(query: dict[str, Any]) -> dict[str, Any]:
        return {**query, **result}

    return lookup
